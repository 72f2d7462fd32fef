"""
Per-request cache trace.

Every request carries a RequestTrace recording how the cache served it:
the key, the store state (hit / miss / wait), how many callers shared the
upstream episode and where the time went. The time spent in the store is
charged to a stage named after the outcome, so a coalesced waiter shows
"coalesced" in its Server-Timing header while only the leader shows
"upstream".
"""

from __future__ import annotations

import contextvars
import os
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

import orjson


# store state -> Server-Timing stage the store time is charged to
STAGE_FOR_STATE = {"hit": "cache", "miss": "upstream", "wait": "coalesced"}

_TRACE_LOGS_ENABLED = os.getenv("PERF_STAGE_LOGS", "false").strip().lower() in {
    "1",
    "true",
    "yes",
    "on",
}


@dataclass
class RequestTrace:
    request_id: str
    started_at: float = field(default_factory=time.perf_counter)
    stages: dict[str, float] = field(default_factory=dict)
    cache_key: Optional[str] = None
    cache_state: Optional[str] = None
    shared_with: int = 0

    def add_stage(self, name: str, ms: float) -> None:
        self.stages[name] = round(self.stages.get(name, 0.0) + ms, 3)

    @property
    def total_ms(self) -> float:
        return round((time.perf_counter() - self.started_at) * 1000.0, 3)

    def to_log(self) -> dict:
        return {
            "event": "request_trace",
            "request_id": self.request_id,
            "cache_key": self.cache_key,
            "cache_state": self.cache_state,
            "shared_with": self.shared_with,
            "total_ms": self.total_ms,
            "stages": self.stages,
        }


_trace: contextvars.ContextVar[RequestTrace | None] = contextvars.ContextVar(
    "skycache_trace",
    default=None,
)


def new_request_id() -> str:
    return uuid.uuid4().hex[:16]


def begin(request_id: str) -> contextvars.Token:
    return _trace.set(RequestTrace(request_id))


def end(token: contextvars.Token) -> None:
    trace = _trace.get()
    # only requests that went through the cache are worth a line
    if _TRACE_LOGS_ENABLED and trace is not None and trace.cache_state is not None:
        print(orjson.dumps(trace.to_log()).decode())
    _trace.reset(token)


def current() -> RequestTrace | None:
    return _trace.get()


def record_fetch(key: str, state: str, shared_with: int, ms: float) -> None:
    """Attach the store outcome for this request and charge its time."""
    trace = _trace.get()
    if trace is None:
        return
    trace.cache_key = key
    trace.cache_state = state
    trace.shared_with = shared_with
    trace.add_stage(STAGE_FOR_STATE[state], ms)


@contextmanager
def stage(name: str):
    start = time.perf_counter()
    try:
        yield
    finally:
        trace = _trace.get()
        if trace is not None:
            trace.add_stage(name, (time.perf_counter() - start) * 1000.0)


def server_timing_header() -> str:
    trace = _trace.get()
    if trace is None:
        return ""
    shared_stage = STAGE_FOR_STATE.get(trace.cache_state) if trace.shared_with else None
    parts = []
    for name, dur in trace.stages.items():
        if name == shared_stage:
            parts.append(f'{name};desc="{trace.shared_with + 1} callers";dur={dur:.1f}')
        else:
            parts.append(f"{name};dur={dur:.1f}")
    return ", ".join(parts)
