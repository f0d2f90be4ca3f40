"""Resilience utilities (retry with backoff)."""

from .retry import async_retry, backoff_delay

__all__ = [
    "async_retry",
    "backoff_delay",
]
