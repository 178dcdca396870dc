"""Tool abstraction and registry."""
