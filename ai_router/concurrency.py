"""
Concurrency Helpers
===================
Timeout races and failure-isolated fan-out shared by the manager, the
router and the health monitor.

Timeouts here are fire-and-forget: when the deadline wins, the caller
stops waiting but the underlying call keeps running until it settles on
its own. Its eventual result or exception is collected by a done
callback and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Mapping
from typing import Any, TypeVar

from .errors import ProviderTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Strong references to calls that lost a timeout race
_orphaned: set[asyncio.Future[Any]] = set()


def _collect_orphan(task: asyncio.Future[Any]) -> None:
    _orphaned.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Timed-out call finished with error: {exc}")


def orphaned_call_count() -> int:
    """Number of timed-out calls still running in the background."""
    return len(_orphaned)


async def race_with_timeout(
    awaitable: Awaitable[T],
    timeout: float | None,
    *,
    provider: str | None = None,
) -> T:
    """
    Wait for ``awaitable`` for at most ``timeout`` seconds.

    Raises ProviderTimeoutError when the deadline passes first. The call
    itself is not cancelled. If the waiting caller is cancelled, the call
    is cancelled with it.
    """
    if timeout is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        return task.result()

    _orphaned.add(task)
    task.add_done_callback(_collect_orphan)
    label = provider or "request"
    raise ProviderTimeoutError(f"{label} timed out after {timeout:g}s", provider=provider)


async def gather_isolated(
    calls: Mapping[str, Awaitable[T]],
) -> dict[str, T | BaseException]:
    """Run calls concurrently. One failure never hides a sibling's result."""
    names = list(calls)
    results = await asyncio.gather(*calls.values(), return_exceptions=True)
    return dict(zip(names, results, strict=True))
