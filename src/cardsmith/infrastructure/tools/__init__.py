"""Built-in capabilities."""
