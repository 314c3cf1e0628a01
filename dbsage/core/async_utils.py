"""
Async utilities for wrapping synchronous service calls.

Provides run_sync() to offload blocking I/O (connector queries, store
transactions) to threads so a slow customer database cannot starve the
event loop that drives other workflow runs.
"""

import asyncio
import functools
import logging
import time
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_sync(func: Callable[..., T], *args: Any, timeout: float = 30, **kwargs: Any) -> T:
    """
    Run a synchronous function in a thread without blocking the event loop.

    Args:
        func: Synchronous callable to execute.
        *args: Positional arguments forwarded to func.
        timeout: Maximum seconds to wait (default 30).
        **kwargs: Keyword arguments forwarded to func.

    Returns:
        The return value of func(*args, **kwargs).

    Raises:
        TimeoutError: If execution exceeds the timeout.
        Exception: Any exception raised by func propagates unchanged.
    """
    name = getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))
    call = functools.partial(func, *args, **kwargs)
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(asyncio.to_thread(call), timeout=timeout)
        elapsed = (time.perf_counter() - start) * 1000
        logger.debug("run_sync %s completed in %.2fms", name, elapsed)
        return result
    except asyncio.TimeoutError:
        elapsed = (time.perf_counter() - start) * 1000
        raise TimeoutError(
            f"{name} timed out after {elapsed:.0f}ms (limit {timeout}s)"
        )
