"""Core domain: session state, work items and the execution engine."""
