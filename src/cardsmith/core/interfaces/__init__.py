"""Protocol seams between the core and its infrastructure adapters."""
