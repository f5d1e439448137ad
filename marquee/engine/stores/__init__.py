"""Repository stores backing the engine's persisted state."""
