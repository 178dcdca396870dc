"""Application layer: settings, wiring and the generation service."""
