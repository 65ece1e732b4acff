"""Routers package."""

from . import health, pool, stages, workers

__all__ = [
    "health",
    "pool",
    "stages",
    "workers",
]
