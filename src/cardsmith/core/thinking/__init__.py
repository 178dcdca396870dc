"""Self-evaluation, improvement and sub-behavior routing for capabilities."""
