"""
client/singleflight.py -- Collapse concurrent calls into one in-flight operation.

The first caller of do() becomes the leader: it runs the operation and
publishes the outcome on a shared future. Callers arriving while the leader
is running attach to that future instead of starting their own. The future
is resolved or rejected exactly once and then discarded, so the next call
after completion starts a fresh operation.

Followers await the shared future through asyncio.shield(): cancelling one
follower never cancels the leader's work or the other followers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """One shared pending result per flight. Not thread-safe; one event loop only."""

    def __init__(self) -> None:
        self._future: asyncio.Future[T] | None = None

    @property
    def in_flight(self) -> bool:
        return self._future is not None

    async def do(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation, or join the run already in progress.

        Every caller of the same flight gets the same result or the same
        exception. If the leader is cancelled, followers see CancelledError.
        """
        if self._future is not None:
            return await asyncio.shield(self._future)

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._future = future
        try:
            result = await operation()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved: with no followers, asyncio would otherwise log
            # "Future exception was never retrieved".
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._future = None
