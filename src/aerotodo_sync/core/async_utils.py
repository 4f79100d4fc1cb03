"""Async utilities for bridging blocking HTTP calls into the sync loop."""

import asyncio
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Every ``requests`` call made by the engine goes through here, so these
    calls are the suspension points of a reconciliation cycle.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        events = await run_sync(client.list_events, window, access_token)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
