"""
RequestCoalescer - Prevents duplicate concurrent reads.

When multiple callers read the same key simultaneously,
only one actual request is made and the result is shared.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


@dataclass
class _InFlight:
    task: asyncio.Task[Any]
    subscribers: int = 0


class RequestCoalescer:
    """
    Coalesces concurrent async requests by key.

    All callers of the same key await one shared task. A caller that is
    cancelled stops waiting but does not cancel the shared task, so the
    remaining subscribers (and any side effects such as caching) still see
    it through.

    Usage:
        coalescer = RequestCoalescer()

        async def read(key: str):
            return await coalescer.coalesce(key, lambda: fetch(key))
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, _InFlight] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._stats = CoalescerStats()

    async def coalesce(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Execute request with coalescing.

        If a request with the same key is already in flight, wait for and
        return its result (or exception) instead of making a new request.
        """
        async with self._lock:
            entry = self._in_flight.get(key)
            if entry is not None:
                self._stats.coalesced += 1
                self._log(f"JOIN: Waiting for in-flight request: {key[:80]}")
            else:
                self._stats.total += 1
                self._log(f"NEW: Starting request: {key[:80]}")
                task = asyncio.create_task(self._execute_and_cleanup(key, request_fn))
                task.add_done_callback(_consume_exception)
                entry = _InFlight(task=task)
                self._in_flight[key] = entry
            entry.subscribers += 1

        try:
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            if not entry.task.done():
                self._stats.abandoned += 1
                self._log(f"LEAVE: Subscriber left in-flight request: {key[:80]}")
            raise
        finally:
            entry.subscribers -= 1

    async def _execute_and_cleanup(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute request and clean up when done."""
        try:
            return await request_fn()
        finally:
            async with self._lock:
                entry = self._in_flight.get(key)
                if entry is not None and entry.task is asyncio.current_task():
                    del self._in_flight[key]
                self._log(f"DONE: Request completed: {key[:80]}")

    async def forget(self, keys: list[str]) -> int:
        """
        Detach in-flight requests so the next caller starts a new one.

        The detached tasks keep running for their current subscribers.
        """
        async with self._lock:
            count = 0
            for key in keys:
                if self._in_flight.pop(key, None) is not None:
                    count += 1
            if count:
                self._log(f"FORGET: {count} in-flight requests detached")
            return count

    async def cancel_all(self) -> int:
        """Cancel all in-flight requests."""
        async with self._lock:
            count = len(self._in_flight)
            for entry in self._in_flight.values():
                entry.task.cancel()
            self._in_flight.clear()
            if count:
                self._log(f"CANCEL_ALL: {count} requests cancelled")
            return count

    def get_in_flight_keys(self) -> list[str]:
        """Get keys of all in-flight requests."""
        return list(self._in_flight.keys())

    def get_subscriber_count(self, key: str) -> int:
        entry = self._in_flight.get(key)
        return entry.subscribers if entry else 0

    def get_stats(self) -> "CoalescerStats":
        """Get coalescing statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Coalescer] {message}")


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # Every subscriber may have left before the shared request failed
    if not task.cancelled():
        task.exception()


class CoalescerStats:
    """Statistics for request coalescing."""

    def __init__(self):
        self.total: int = 0  # Unique requests made
        self.coalesced: int = 0  # Callers that joined an in-flight request
        self.abandoned: int = 0  # Callers that left before the result arrived
        self.in_flight: int = 0  # Current in-flight requests

    @property
    def coalesce_rate(self) -> float:
        """Calculate coalescing rate."""
        total = self.total + self.coalesced
        if total == 0:
            return 0.0
        return self.coalesced / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "coalesced": self.coalesced,
            "abandoned": self.abandoned,
            "in_flight": self.in_flight,
            "coalesce_rate": f"{self.coalesce_rate:.2%}",
        }
