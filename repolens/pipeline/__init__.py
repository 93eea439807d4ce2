"""Pipeline engine: stages, event bus, orchestrator and background work."""
