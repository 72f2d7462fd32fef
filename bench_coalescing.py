#!/usr/bin/env python3
"""
Coalescing benchmark against a running SkyCache server.

What it measures:
  1. Burst: N simultaneous requests for one never-seen city. Exactly one
     should be served "live", the rest "coalesced"; the upstream fetch count
     in /v1/cache/stats should grow by one.
  2. Warm: sequential requests for the same city, all served from "memory".
  3. Cold: sequential requests for distinct cities (every one goes upstream).

Usage:
  SKYCACHE_URL=http://localhost:8000 python bench_coalescing.py

The server needs CACHE_ADMIN_ENABLED=true (the stats route is admin-only)
and a RATE_LIMIT_API window larger than the run, e.g. "1000/minute".
"""

import os
import random
import statistics
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import requests

# ── Config ──────────────────────────────────────────────────

BASE = os.environ.get("SKYCACHE_URL", "http://localhost:8000")
TIMEOUT = (5, 30)
BURST = int(os.environ.get("BENCH_BURST", "25"))
ROUNDS = 10
CITIES = ["London", "Paris", "Berlin", "Madrid", "Rome", "Vienna", "Prague", "Oslo"]

# ── Helpers ─────────────────────────────────────────────────

_log_lines = []


def log(msg=""):
    line = f"[{time.strftime('%H:%M:%S')}] {msg}" if msg else ""
    print(line)
    _log_lines.append(line)


def save_results():
    os.makedirs("bench_results", exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    path = f"bench_results/coalescing_{ts}.txt"
    with open(path, "w") as f:
        f.write(f"SkyCache coalescing benchmark, {datetime.now().isoformat()}\n")
        f.write("=" * 70 + "\n\n")
        f.write("\n".join(_log_lines) + "\n")
    print(f"\nResults saved to {path}")


def timed_get(session, path, params=None):
    """Single timed GET. Returns status, latency and the cache layer header."""
    start = time.perf_counter()
    resp = session.get(f"{BASE}{path}", params=params, timeout=TIMEOUT)
    total_ms = (time.perf_counter() - start) * 1000
    return {
        "status": resp.status_code,
        "total_ms": round(total_ms, 2),
        "cache_layer": resp.headers.get("x-cache-layer", ""),
    }


def cache_stats(session):
    return session.get(f"{BASE}/v1/cache/stats", timeout=TIMEOUT).json()


def pstats(values):
    """Compute percentile stats from a list of floats."""
    if not values:
        return {"n": 0}
    s = sorted(values)
    n = len(s)
    return {
        "n": n,
        "min": round(s[0], 1),
        "p50": round(s[n // 2], 1),
        "avg": round(statistics.mean(s), 1),
        "p95": round(s[min(int(n * 0.95), n - 1)], 1),
        "max": round(s[-1], 1),
    }


def fmt_stats(label, values, unit="ms"):
    """Format percentile stats as a single line."""
    st = pstats(values)
    if st["n"] == 0:
        return f"  {label}: no data"
    return (
        f"  {label}: "
        f"min={st['min']}{unit}  "
        f"P50={st['p50']}{unit}  "
        f"avg={st['avg']}{unit}  "
        f"P95={st['p95']}{unit}  "
        f"max={st['max']}{unit}  "
        f"(n={st['n']})"
    )


# ── Test 1: Burst on one key ────────────────────────────────

def test_burst(n=BURST):
    """Fire N identical requests at once; all but one should coalesce."""
    log("=" * 70)
    log(f"TEST 1: BURST ({n} simultaneous requests, one city)")
    log("=" * 70)

    city = random.choice(CITIES)
    sessions = [requests.Session() for _ in range(n)]
    for s in sessions:
        s.get(f"{BASE}/health", timeout=TIMEOUT)

    admin = requests.Session()
    before = cache_stats(admin)
    barrier = threading.Barrier(n, timeout=15)

    def fire(session):
        barrier.wait()
        return timed_get(session, "/v1/weather/current", {"city": city, "fresh": "true"})

    with ThreadPoolExecutor(max_workers=n) as pool:
        results = list(pool.map(fire, sessions))

    after = cache_stats(admin)
    for s in sessions:
        s.close()
    admin.close()

    layers = Counter(r["cache_layer"] for r in results)
    upstream = after["fetches"] - before["fetches"]
    log(f"  city={city} layers={dict(layers)} statuses={sorted({r['status'] for r in results})}")
    log(f"  upstream fetches during burst: {upstream}")
    log(fmt_stats("Burst  ", [r["total_ms"] for r in results]))
    if upstream == 1:
        log("\n  >> Coalesced: one upstream call served the whole burst")
    else:
        log(f"\n  >> Expected 1 upstream call, saw {upstream}")
    return results


# ── Test 2: Warm / cached ──────────────────────────────────

def test_warm(rounds=ROUNDS):
    log()
    log("=" * 70)
    log(f"TEST 2: WARM ({rounds} sequential requests, cached city)")
    log("=" * 70)

    session = requests.Session()
    timed_get(session, "/v1/weather/current", {"city": CITIES[0]})
    results = [timed_get(session, "/v1/weather/current", {"city": CITIES[0]}) for _ in range(rounds)]
    session.close()

    log(f"  layers={dict(Counter(r['cache_layer'] for r in results))}")
    log(fmt_stats("Warm   ", [r["total_ms"] for r in results]))
    return results


# ── Test 3: Cold / distinct keys ───────────────────────────

def test_cold():
    log()
    log("=" * 70)
    log(f"TEST 3: COLD ({len(CITIES)} distinct cities, fresh=true)")
    log("=" * 70)

    session = requests.Session()
    results = []
    for city in CITIES:
        r = timed_get(session, "/v1/weather/current", {"city": city, "fresh": "true"})
        results.append(r)
        log(f"  {city:8s} {r['total_ms']:8.1f}ms layer={r['cache_layer']} status={r['status']}")
        time.sleep(0.2)
    session.close()

    log(fmt_stats("Cold   ", [r["total_ms"] for r in results]))
    return results


# ── Main ────────────────────────────────────────────────────

def main():
    log("SkyCache Coalescing Benchmark")
    log(f"Date:   {datetime.now().isoformat()}")
    log(f"Server: {BASE}")
    log()

    burst = test_burst()
    warm = test_warm()
    cold = test_cold()

    log()
    log("=" * 70)
    log("SUMMARY")
    log("=" * 70)
    for label, results in [("Burst", burst), ("Warm", warm), ("Cold", cold)]:
        values = [r["total_ms"] for r in results]
        log(f"  {label:6s}: avg {statistics.mean(values):7.1f}ms over {len(values)} requests")

    log()
    save_results()


if __name__ == "__main__":
    main()
