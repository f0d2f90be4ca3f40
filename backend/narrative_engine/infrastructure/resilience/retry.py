"""Retry helpers with exponential or linear backoff."""
from __future__ import annotations

import asyncio
import random
from typing import Any, Callable, Optional, Tuple, Type


async def async_retry(
    func: Callable[..., Any],
    *args: Any,
    retries: int = 3,
    backoff: float = 0.5,
    jitter: float = 0.1,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    linear: bool = False,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    **kwargs: Any,
) -> Any:
    delay = backoff
    attempt = 0
    while True:
        try:
            if asyncio.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            return await asyncio.to_thread(func, *args, **kwargs)
        except exceptions as exc:
            attempt += 1
            if attempt > retries:
                raise
            if on_retry is not None:
                on_retry(attempt, exc)
            await asyncio.sleep(delay + random.random() * jitter)
            if linear:
                delay = backoff * (attempt + 1)
            else:
                delay *= 2


def backoff_delay(attempt: int, backoff: float, linear: bool = False) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    if attempt < 1:
        return 0.0
    if linear:
        return backoff * attempt
    return backoff * (2 ** (attempt - 1))
