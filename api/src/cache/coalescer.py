"""
Single-flight request coalescer.

Concurrent identical requests (same cache key) share one upstream call
instead of each making their own. Each pending call is tracked by an
InFlight handle that any number of callers can await, from any event loop
or thread, until the one producer settles.
"""

import asyncio
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Optional


class InFlight:
    """Shared handle to one pending fetch (one episode)."""

    __slots__ = ("key", "started_at", "waiters", "_future")

    def __init__(self, key: str, started_at: float):
        self.key = key
        self.started_at = started_at
        self.waiters = 0
        # concurrent Future so callers on other loops/threads can attach
        self._future: Future = Future()

    def resolve(self, value: Any) -> None:
        self._future.set_result(value)

    def reject(self, exc: BaseException) -> None:
        self._future.set_exception(exc)

    def done(self) -> bool:
        return self._future.done()

    async def wait(self) -> Any:
        """
        Suspend until the episode settles and return its value (or raise
        its error). Cancelling the caller only cancels this wait; the
        shared future and the producer behind it keep running.
        """
        return await asyncio.shield(asyncio.wrap_future(self._future))


class Coalescer:
    """
    In-flight table: key -> InFlight.

    Pass the owner's lock when the caller must combine join() with other
    checks in one atomic step (the store does this with its entry table).
    """

    def __init__(
        self,
        lock: Optional[threading.RLock] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._in_flight: dict[str, InFlight] = {}
        self._lock = lock or threading.RLock()
        self._clock = clock

    def join(self, key: str) -> tuple[InFlight, bool]:
        """
        Attach to the in-flight handle for `key`, creating it if absent.

        Returns:
            (handle, was_coalesced); was_coalesced=True for waiters,
            False for the caller that registered the handle (the leader).
        """
        with self._lock:
            flight = self._in_flight.get(key)
            if flight is not None:
                flight.waiters += 1
                return flight, True
            flight = InFlight(key, self._clock())
            self._in_flight[key] = flight
            return flight, False

    def settle(self, key: str, flight: InFlight) -> None:
        """Drop the marker for `key` if it still belongs to `flight`."""
        with self._lock:
            if self._in_flight.get(key) is flight:
                del self._in_flight[key]

    def get(self, key: str) -> Optional[InFlight]:
        with self._lock:
            return self._in_flight.get(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._in_flight)

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)
