from __future__ import annotations

import asyncio
import threading

import pytest

from api.src.cache import CoalescingStore


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock):
    """Unstarted store: producers run on its background runner thread."""
    store = CoalescingStore(default_ttl=60, clock=clock)
    yield store
    # own thread: asyncio.run on the main thread would reset its event loop
    closer = threading.Thread(target=asyncio.run, args=(store.close(),))
    closer.start()
    closer.join(timeout=5)


@pytest.fixture
async def started_store(store: CoalescingStore):
    """`store` bound to the test's loop, so producers share it with the test."""
    await store.start()
    yield store
    await store.close()
