"""Cardsmith - autonomous character card and worldbook generation agent."""

__version__ = "0.1.0"
