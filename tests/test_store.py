from __future__ import annotations

import asyncio
import threading
import time

import pytest

from api.src.cache import CoalescingStore, InvalidTTLError, ProducerError


class _Counter:
    """Async producer that counts invocations and can be held open."""

    def __init__(self, value="value", delay: float = 0.0, gate: asyncio.Event | None = None) -> None:
        self.value = value
        self.delay = delay
        self.gate = gate
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.value


async def _boom():
    await asyncio.sleep(0.01)
    raise RuntimeError("boom")


# ── Key-value access ────────────────────────────────────────


def test_unknown_key_is_absent(store: CoalescingStore) -> None:
    assert store.has("missing") is False
    assert store.get("missing") is None
    assert store.get("missing", "fallback") == "fallback"


def test_set_expires_after_ttl(store: CoalescingStore, clock) -> None:
    store.set("a", 1, ttl=1)
    assert store.get("a") == 1

    clock.advance(1.1)

    assert store.get("a") is None
    assert store.has("a") is False


def test_default_ttl_is_used_when_omitted(store: CoalescingStore, clock) -> None:
    store.set("a", "x")
    clock.advance(59)
    assert store.has("a")
    clock.advance(1)
    assert not store.has("a")


def test_set_replaces_value_and_expiry(store: CoalescingStore, clock) -> None:
    store.set("a", 1, ttl=1)
    clock.advance(0.5)
    store.set("a", 2, ttl=10)
    clock.advance(1)

    assert store.get("a") == 2


def test_round_trip_keeps_identity(store: CoalescingStore) -> None:
    payloads = [{"temp": 21.5}, [1, 2, 3], b"raw", 0, "", object()]
    for i, value in enumerate(payloads):
        store.set(f"k{i}", value)
    for i, value in enumerate(payloads):
        assert store.get(f"k{i}") is value


def test_none_value_is_a_real_entry(store: CoalescingStore) -> None:
    store.set("a", None)
    assert store.has("a")


def test_delete(store: CoalescingStore) -> None:
    store.set("a", 1)
    store.delete("a")
    store.delete("never-set")
    assert not store.has("a")


def test_flush_clears_everything(store: CoalescingStore) -> None:
    for key in ("a", "b", "c"):
        store.set(key, key)
    store.flush()
    assert not any(store.has(k) for k in ("a", "b", "c"))
    assert store.stats()["keys"] == 0


@pytest.mark.parametrize("ttl", [0, -1, float("inf"), float("nan"), "5", True])
def test_invalid_ttl_is_rejected(store: CoalescingStore, ttl) -> None:
    with pytest.raises(InvalidTTLError):
        store.set("a", 1, ttl=ttl)
    assert not store.has("a")


def test_invalid_ttl_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        CoalescingStore(default_ttl=0)


def test_negative_sweep_interval_is_rejected() -> None:
    with pytest.raises(ValueError):
        CoalescingStore(default_ttl=10, sweep_interval=-1)


def test_sweep_interval_defaults_to_fraction_of_ttl() -> None:
    assert CoalescingStore(default_ttl=60).sweep_interval == pytest.approx(12.0)


# ── get_or_fetch ────────────────────────────────────────────


async def test_cached_value_skips_producer(store: CoalescingStore) -> None:
    store.set("k", "cached")
    producer = _Counter("fresh")

    assert await store.get_or_fetch("k", producer) == "cached"
    assert producer.calls == 0


async def test_miss_populates_cache(store: CoalescingStore) -> None:
    producer = _Counter("fetched")

    assert await store.get_or_fetch("k", producer, ttl=5) == "fetched"
    assert store.get("k") == "fetched"
    assert await store.get_or_fetch("k", producer) == "fetched"
    assert producer.calls == 1


async def test_concurrent_callers_share_one_invocation(store: CoalescingStore) -> None:
    payload = {"temp": 12.0}
    producer = _Counter(payload, delay=0.01)

    results = await asyncio.gather(*(store.get_or_fetch("k", producer) for _ in range(25)))

    assert producer.calls == 1
    assert all(r is payload for r in results)
    assert store.coalescer.in_flight_count == 0


async def test_two_callers_slow_fetch_returns_42(store: CoalescingStore) -> None:
    slow_fetch = _Counter(42, delay=0.1)

    a, b = await asyncio.gather(
        store.get_or_fetch("x", slow_fetch),
        store.get_or_fetch("x", slow_fetch),
    )

    assert (a, b) == (42, 42)
    assert slow_fetch.calls == 1


async def test_failure_reaches_every_waiter(store: CoalescingStore) -> None:
    calls = 0

    async def failing():
        nonlocal calls
        calls += 1
        return await _boom()

    results = await asyncio.gather(
        *(store.get_or_fetch("k", failing) for _ in range(5)),
        return_exceptions=True,
    )

    assert calls == 1
    assert all(isinstance(r, ProducerError) for r in results)
    assert len({id(r) for r in results}) == 1
    assert isinstance(results[0].cause, RuntimeError)
    assert results[0].key == "k"


async def test_failing_fetch_is_not_cached(store: CoalescingStore) -> None:
    with pytest.raises(ProducerError) as exc_info:
        await store.get_or_fetch("y", _boom)

    assert str(exc_info.value.cause) == "boom"
    assert exc_info.value.__cause__ is exc_info.value.cause
    assert store.has("y") is False
    assert "y" not in store.coalescer


async def test_next_call_after_failure_starts_new_episode(store: CoalescingStore) -> None:
    with pytest.raises(ProducerError):
        await store.get_or_fetch("k", _boom)

    producer2 = _Counter("recovered")
    assert await store.get_or_fetch("k", producer2) == "recovered"
    assert producer2.calls == 1


async def test_invalid_ttl_fails_before_fetch(store: CoalescingStore) -> None:
    producer = _Counter()

    with pytest.raises(InvalidTTLError):
        await store.get_or_fetch("k", producer, ttl=-5)

    assert producer.calls == 0
    assert "k" not in store.coalescer


async def test_non_awaitable_producer_fails_as_producer_error(store: CoalescingStore) -> None:
    with pytest.raises(ProducerError) as exc_info:
        await store.get_or_fetch("k", lambda: "not awaitable")

    assert isinstance(exc_info.value.cause, TypeError)
    assert "k" not in store.coalescer


async def test_cancelled_producer_settles_episode(store: CoalescingStore) -> None:
    async def cancelled():
        raise asyncio.CancelledError()

    with pytest.raises(ProducerError) as exc_info:
        await store.get_or_fetch("k", cancelled)

    assert isinstance(exc_info.value.cause, asyncio.CancelledError)
    assert "k" not in store.coalescer


async def test_ttl_starts_when_value_is_stored(store: CoalescingStore, clock) -> None:
    async def slow():
        clock.advance(5)
        return "v"

    await store.get_or_fetch("k", slow, ttl=10)
    clock.advance(9)

    assert store.get("k") == "v"
    clock.advance(1)
    assert store.get("k") is None


async def test_flush_keeps_in_flight_fetch_running(started_store: CoalescingStore) -> None:
    gate = asyncio.Event()
    producer = _Counter("late", gate=gate)
    task = asyncio.create_task(started_store.get_or_fetch("k", producer))
    await asyncio.sleep(0)

    started_store.flush()
    gate.set()

    assert await task == "late"
    assert started_store.get("k") == "late"


async def test_external_set_during_flight_is_overwritten(started_store: CoalescingStore) -> None:
    # the fetch result always lands last, replacing a manual set
    gate = asyncio.Event()
    task = asyncio.create_task(started_store.get_or_fetch("k", _Counter("fetched", gate=gate)))
    await asyncio.sleep(0)

    started_store.set("k", "manual")
    assert started_store.get("k") == "manual"

    gate.set()
    assert await task == "fetched"
    assert started_store.get("k") == "fetched"


async def test_cancelled_waiter_does_not_affect_episode(started_store: CoalescingStore) -> None:
    gate = asyncio.Event()
    producer = _Counter("v", gate=gate)
    leader = asyncio.create_task(started_store.get_or_fetch("k", producer))
    quitter = asyncio.create_task(started_store.get_or_fetch("k", producer))
    stayer = asyncio.create_task(started_store.get_or_fetch("k", producer))
    await asyncio.sleep(0.01)

    quitter.cancel()
    await asyncio.sleep(0)
    gate.set()

    assert await leader == "v"
    assert await stayer == "v"
    assert quitter.cancelled()
    assert producer.calls == 1


async def test_cancelled_leader_does_not_cancel_producer(started_store: CoalescingStore) -> None:
    gate = asyncio.Event()
    producer = _Counter("v", gate=gate)
    leader = asyncio.create_task(started_store.get_or_fetch("k", producer))
    waiter = asyncio.create_task(started_store.get_or_fetch("k", producer))
    await asyncio.sleep(0.01)

    leader.cancel()
    await asyncio.sleep(0)
    gate.set()

    assert await waiter == "v"
    assert leader.cancelled()
    assert started_store.get("k") == "v"
    assert producer.calls == 1


async def test_other_keys_are_not_blocked(started_store: CoalescingStore) -> None:
    gate = asyncio.Event()
    slow = asyncio.create_task(started_store.get_or_fetch("slow", _Counter("s", gate=gate)))
    await asyncio.sleep(0)

    assert await started_store.get_or_fetch("fast", _Counter("f")) == "f"
    assert not slow.done()

    gate.set()
    assert await slow == "s"


# ── fetch() states ──────────────────────────────────────────


async def test_fetch_reports_hit_miss_and_wait(store: CoalescingStore) -> None:
    producer = _Counter("v", delay=0.01)

    (_, first), (_, second) = await asyncio.gather(
        store.fetch("k", producer),
        store.fetch("k", producer),
    )
    _, third = await store.fetch("k", producer)

    assert (first, second, third) == ("miss", "wait", "hit")


async def test_fresh_fetch_bypasses_cached_value(store: CoalescingStore) -> None:
    store.set("k", "old")

    value, state = await store.fetch("k", _Counter("new"), fresh=True)

    assert (value, state) == ("new", "miss")
    assert store.get("k") == "new"


async def test_fresh_fetch_joins_in_flight_episode(store: CoalescingStore) -> None:
    producer = _Counter("v", delay=0.01)

    results = await asyncio.gather(
        store.fetch("k", producer),
        store.fetch("k", producer, fresh=True),
    )

    assert [state for _, state in results] == ["miss", "wait"]
    assert producer.calls == 1


# ── Threads ─────────────────────────────────────────────────


def test_threads_with_own_loops_share_one_invocation(store: CoalescingStore) -> None:
    calls = 0
    calls_lock = threading.Lock()
    barrier = threading.Barrier(8)
    results: list = []
    errors: list = []

    async def producer():
        nonlocal calls
        with calls_lock:
            calls += 1
        await asyncio.sleep(0.2)
        return 42

    def worker():
        barrier.wait()
        try:
            results.append(asyncio.run(store.get_or_fetch("x", producer)))
        except Exception as e:  # pragma: no cover - reported below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert errors == []
    assert results == [42] * 8
    assert calls == 1


def test_leader_thread_giving_up_does_not_fail_other_threads(store: CoalescingStore) -> None:
    calls = 0
    outcome: dict = {}

    async def slow_fetch():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.3)
        return 42

    def leader():
        async def give_up():
            await asyncio.wait_for(store.get_or_fetch("x", slow_fetch), 0.05)

        try:
            asyncio.run(give_up())
        except asyncio.TimeoutError:
            outcome["leader"] = "timed out"

    def waiter():
        while "x" not in store.coalescer:
            time.sleep(0.005)
        outcome["waiter"] = asyncio.run(store.get_or_fetch("x", slow_fetch))

    threads = [threading.Thread(target=leader), threading.Thread(target=waiter)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    # the leader's loop is gone well before the fetch completes
    assert outcome == {"leader": "timed out", "waiter": 42}
    assert calls == 1
    assert store.get("x") == 42


async def test_unstarted_store_runs_producer_off_the_caller_loop(store: CoalescingStore) -> None:
    loops = []

    async def producer():
        loops.append(asyncio.get_running_loop())
        return "v"

    assert await store.get_or_fetch("k", producer) == "v"
    assert loops[0] is not asyncio.get_running_loop()


async def test_started_store_runs_other_threads_producers_on_its_loop(
    started_store: CoalescingStore,
) -> None:
    owner = asyncio.get_running_loop()
    loops = []

    async def producer():
        loops.append(asyncio.get_running_loop())
        await asyncio.sleep(0.01)
        return "v"

    value = await asyncio.to_thread(asyncio.run, started_store.get_or_fetch("k", producer))

    assert value == "v"
    assert loops == [owner]


async def test_failed_launch_releases_key(store: CoalescingStore, monkeypatch) -> None:
    dead = asyncio.new_event_loop()
    dead.close()
    monkeypatch.setattr(store, "_producer_loop", lambda: dead)
    scheduled = []
    run = store._run

    def spy(*args):
        coro = run(*args)
        scheduled.append(coro)
        return coro

    monkeypatch.setattr(store, "_run", spy)
    producer = _Counter()

    with pytest.raises(RuntimeError):
        await store.get_or_fetch("k", producer)

    # closed, so it is never reported as "never awaited"
    assert scheduled[0].cr_frame is None
    assert producer.calls == 0
    assert "k" not in store.coalescer
    assert store.stats()["in_flight"] == 0


async def test_fetch_result_counts_shared_callers(started_store: CoalescingStore) -> None:
    producer = _Counter("v", delay=0.01)

    results = await asyncio.gather(*(started_store.fetch_result("k", producer) for _ in range(4)))
    hit = await started_store.fetch_result("k", producer)

    assert [r.state for r in results] == ["miss", "wait", "wait", "wait"]
    assert {r.waiters for r in results} == {3}
    assert (hit.state, hit.waiters) == ("hit", 0)


async def test_close_stops_runner_and_store_stays_usable(store: CoalescingStore) -> None:
    assert await store.get_or_fetch("a", _Counter("1")) == "1"
    await store.close()

    assert store.get("a") == "1"
    assert await store.get_or_fetch("b", _Counter("2")) == "2"


# ── Stats & expiry sweep ────────────────────────────────────


async def test_stats_counts(store: CoalescingStore) -> None:
    store.set("a", 1)
    store.get("a")
    store.get("nope")
    producer = _Counter("v", delay=0.01)
    await asyncio.gather(store.get_or_fetch("b", producer), store.get_or_fetch("b", producer))
    with pytest.raises(ProducerError):
        await store.get_or_fetch("c", _boom)

    stats = store.stats()

    assert stats["hits"] == 1
    assert stats["misses"] == 4
    assert stats["keys"] == 2
    assert stats["in_flight"] == 0
    assert stats["coalesced"] == 1
    assert stats["fetches"] == 2
    assert stats["failures"] == 1


def test_purge_expired(store: CoalescingStore, clock) -> None:
    store.set("short", 1, ttl=1)
    store.set("long", 2, ttl=100)
    clock.advance(2)

    assert store.purge_expired() == 1
    assert store.has("long")


async def test_sweep_task_purges_in_background(clock) -> None:
    store = CoalescingStore(default_ttl=60, sweep_interval=0.01, clock=clock)
    store.set("a", 1, ttl=1)
    clock.advance(2)

    await store.start()
    await asyncio.sleep(0.05)
    await store.close()

    assert store.purge_expired() == 0


async def test_sweep_disabled_with_zero_interval(clock) -> None:
    store = CoalescingStore(default_ttl=60, sweep_interval=0, clock=clock)
    store.set("a", 1, ttl=1)
    clock.advance(2)

    await store.start()
    await asyncio.sleep(0.02)
    await store.close()

    assert store.purge_expired() == 1
