"""Router exports for the engine API."""
from . import health, jobs, providers

__all__ = ["health", "jobs", "providers"]
