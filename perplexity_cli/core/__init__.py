"""Core data model, persistence and logging."""
