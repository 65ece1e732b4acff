"""Shared utilities for the virtual participant pool services."""

from .redis.client import RedisStreamClient

__all__ = ["RedisStreamClient"]
