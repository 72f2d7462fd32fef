"""
CoalescingStore: in-process TTL cache with single-flight fetches.

Provides:
- get/set/has/delete/flush: direct key-value access with per-entry TTL
- get_or_fetch(): cache-aside where concurrent misses for one key share a
  single producer call (one "episode"), and every caller gets its outcome
- periodic expiry sweep (hygiene only; reads always check expiry)

Safe on one event loop and across threads running their own loops: every
check-and-register sequence runs under one RLock, which is never held
across an await.

Producers never run on a caller's loop unless that loop owns the store.
start() makes the running loop the owner; before that (or after close())
producers run on a background loop thread the store starts on demand. A
caller whose loop exits mid-fetch therefore only drops its own wait.
"""

import asyncio
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, NamedTuple, Optional

from .coalescer import Coalescer, InFlight
from .errors import InvalidTTLError, ProducerError

CacheState = Literal["hit", "miss", "wait"]
Producer = Callable[[], Awaitable[Any]]

_MISSING = object()


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float


class FetchResult(NamedTuple):
    value: Any
    state: CacheState
    # callers besides the leader that shared the episode (0 on a hit)
    waiters: int


async def _cancel_all() -> None:
    current = asyncio.current_task()
    tasks = [t for t in asyncio.all_tasks() if t is not current]
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _check_ttl(ttl: Any) -> float:
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
        raise InvalidTTLError(f"ttl must be a number of seconds, got {ttl!r}")
    if not math.isfinite(ttl) or ttl <= 0:
        raise InvalidTTLError(f"ttl must be positive and finite, got {ttl!r}")
    return float(ttl)


class CoalescingStore:
    def __init__(
        self,
        default_ttl: float = 60,
        sweep_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._default_ttl = _check_ttl(default_ttl)
        if sweep_interval is None:
            sweep_interval = self._default_ttl * 0.2
        elif sweep_interval < 0:
            raise ValueError(f"sweep_interval must be >= 0, got {sweep_interval!r}")
        self._sweep_interval = float(sweep_interval)
        self._clock = clock

        self._lock = threading.RLock()
        self._entries: dict[str, _Entry] = {}
        self.coalescer = Coalescer(lock=self._lock, clock=clock)

        # strong refs so running producers are not garbage collected
        self._tasks: set = set()
        self._sweep_task: asyncio.Task | None = None
        # loop producers run on: set by start(), else the background runner
        self._loop: asyncio.AbstractEventLoop | None = None
        self._runner: tuple[asyncio.AbstractEventLoop, threading.Thread] | None = None

        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._fetches = 0
        self._failures = 0

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    @property
    def sweep_interval(self) -> float:
        return self._sweep_interval

    # ── Key-value access ─────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """Return the unexpired value for `key`, or `default`."""
        with self._lock:
            value = self._lookup(key)
            if value is _MISSING:
                self._misses += 1
                return default
            self._hits += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store `value`, replacing any entry and expiry. TTL counts from now."""
        ttl = self._resolve_ttl(ttl)
        with self._lock:
            self._entries[key] = _Entry(value, self._clock() + ttl)

    def has(self, key: str) -> bool:
        with self._lock:
            return self._lookup(key) is not _MISSING

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def flush(self) -> None:
        """Drop every entry. In-flight fetches keep running and still store."""
        with self._lock:
            self._entries.clear()

    # ── Coalesced cache-aside ────────────────────────────────

    async def get_or_fetch(
        self,
        key: str,
        producer: Producer,
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Return the cached value for `key`, or run `producer` once for all
        concurrent callers and cache its result.

        Raises:
            ProducerError: the producer of this episode failed. Nothing is
                cached; the next call starts a new episode.
            InvalidTTLError: `ttl` is not a positive number of seconds.
        """
        value, _ = await self.fetch(key, producer, ttl)
        return value

    async def fetch(
        self,
        key: str,
        producer: Producer,
        ttl: Optional[float] = None,
        *,
        fresh: bool = False,
    ) -> tuple[Any, CacheState]:
        """
        get_or_fetch() that also reports how the value was obtained.

        Returns:
            (value, state) where state is "hit" (served from cache), "miss"
            (this caller ran the producer) or "wait" (joined an episode
            another caller started). fresh=True skips the cached value but
            still joins an in-flight episode.
        """
        result = await self.fetch_result(key, producer, ttl, fresh=fresh)
        return result.value, result.state

    async def fetch_result(
        self,
        key: str,
        producer: Producer,
        ttl: Optional[float] = None,
        *,
        fresh: bool = False,
    ) -> FetchResult:
        """fetch() plus how many other callers shared the episode."""
        ttl = self._resolve_ttl(ttl)

        with self._lock:
            if not fresh:
                value = self._lookup(key)
                if value is not _MISSING:
                    self._hits += 1
                    return FetchResult(value, "hit", 0)
                self._misses += 1
            flight, was_coalesced = self.coalescer.join(key)
            if was_coalesced:
                self._coalesced += 1
            else:
                self._fetches += 1

        if not was_coalesced:
            self._launch(key, producer, ttl, flight)

        value = await flight.wait()
        # settled before resolve, so the count is final here
        return FetchResult(value, "wait" if was_coalesced else "miss", flight.waiters)

    def _launch(self, key: str, producer: Producer, ttl: float, flight: InFlight) -> None:
        coro = self._run(key, producer, ttl, flight)
        try:
            loop = self._producer_loop()
            if loop is asyncio.get_running_loop():
                self._track(loop.create_task(coro))
            else:
                self._track(asyncio.run_coroutine_threadsafe(coro, loop))
        except BaseException as exc:
            coro.close()
            self.coalescer.settle(key, flight)
            flight.reject(ProducerError(key, exc))
            raise

    def _producer_loop(self) -> asyncio.AbstractEventLoop:
        loop = self._loop
        if loop is not None and loop.is_running():
            return loop
        with self._lock:
            if self._runner is None:
                runner = asyncio.new_event_loop()
                thread = threading.Thread(
                    target=runner.run_forever,
                    name="coalescing-store-producers",
                    daemon=True,
                )
                thread.start()
                self._runner = (runner, thread)
            return self._runner[0]

    def _track(self, task) -> None:
        with self._lock:
            self._tasks.add(task)
        task.add_done_callback(self._untrack)

    def _untrack(self, task) -> None:
        with self._lock:
            self._tasks.discard(task)

    async def _run(self, key: str, producer: Producer, ttl: float, flight: InFlight) -> None:
        try:
            value = await producer()
        except BaseException as exc:
            error = ProducerError(key, exc)
            with self._lock:
                self.coalescer.settle(key, flight)
                self._failures += 1
            flight.reject(error)
            print(f"[cache] fetch failed for {key}: {exc!r}")
            if not isinstance(exc, Exception):
                raise
            return

        # store before dropping the marker: no window where the key looks absent
        with self._lock:
            self._entries[key] = _Entry(value, self._clock() + ttl)
            self.coalescer.settle(key, flight)
        flight.resolve(value)

    # ── Expiry ───────────────────────────────────────────────

    def purge_expired(self) -> int:
        """Remove expired entries. Returns how many were dropped."""
        with self._lock:
            return self._purge_locked(self._clock())

    async def start(self) -> None:
        """
        Bind producers to the running loop and start the expiry sweep
        (the sweep is skipped when disabled or already running).
        """
        self._loop = asyncio.get_running_loop()
        if self._sweep_task is not None or self._sweep_interval <= 0:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        print(f"[cache] Expiry sweep every {self._sweep_interval:g}s")

    async def close(self) -> None:
        """Stop the sweep and the background runner. Entries are kept."""
        self._loop = None
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        with self._lock:
            runner, self._runner = self._runner, None
        if runner is not None:
            loop, thread = runner
            # producers still running there fail their episodes with CancelledError
            await asyncio.wrap_future(asyncio.run_coroutine_threadsafe(_cancel_all(), loop))
            loop.call_soon_threadsafe(loop.stop)
            await asyncio.to_thread(thread.join)
            loop.close()
            print("[cache] Producer runner stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.purge_expired()
            if removed:
                print(f"[cache] Swept {removed} expired entries")

    # ── Stats ────────────────────────────────────────────────

    def stats(self) -> dict:
        with self._lock:
            self._purge_locked(self._clock())
            return {
                "hits": self._hits,
                "misses": self._misses,
                "keys": len(self._entries),
                "in_flight": self.coalescer.in_flight_count,
                "coalesced": self._coalesced,
                "fetches": self._fetches,
                "failures": self._failures,
            }

    # ── Internals (caller holds self._lock) ──────────────────

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return _MISSING
        return entry.value

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def _resolve_ttl(self, ttl: Optional[float]) -> float:
        if ttl is None:
            return self._default_ttl
        return _check_ttl(ttl)
