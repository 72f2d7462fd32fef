"""
SkyCache API
Weather proxy: one normalized schema over WeatherAPI.com / Open-Meteo, with
a coalescing in-memory cache in front of the upstream provider.
"""

import re
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel

from . import telemetry
from .cache import CacheConfig, CoalescingStore, ProducerError
from .config import RateLimitConfig, WeatherConfig
from .providers import Location, ProviderError, WeatherProvider, get_provider, parse_location
from .ratelimit import RateLimitMiddleware, build_rules
from .units import UNITS, convert_weather_data

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# store state -> cache layer reported to clients
_LAYERS = {"hit": "memory", "wait": "coalesced", "miss": "live"}


def _parse_fresh(val: str) -> bool:
    """Parse fresh param; tolerates trailing whitespace from CDN proxies."""
    return val.strip().lower() in ("true", "1", "yes")


# Response models
class APIResponse(BaseModel):
    success: bool
    data: Optional[dict | list] = None
    error: Optional[str] = None
    meta: dict = {}


# ── Helpers ─────────────────────────────────────────────────


def _location(city: Optional[str]) -> Location:
    try:
        return parse_location(city)
    except ProviderError:
        raise HTTPException(status_code=400, detail="City parameter is required")


def _check_unit(unit: str) -> str:
    unit = unit.strip().lower()
    if unit not in UNITS:
        raise HTTPException(status_code=400, detail=f"Unit must be one of: {', '.join(UNITS)}")
    return unit


def _check_date(date: Optional[str]) -> str:
    if not date or not _DATE_RE.match(date):
        raise HTTPException(status_code=400, detail="Date parameter is required (format: YYYY-MM-DD)")
    return date


def _city_key(city: str) -> str:
    return city.strip().lower()


def _upstream_error(e: ProducerError) -> HTTPException:
    cause = e.cause
    if isinstance(cause, ProviderError):
        return HTTPException(status_code=cause.status, detail=str(cause))
    if isinstance(cause, HTTPException):
        return cause
    return HTTPException(status_code=500, detail=str(cause) or "Failed to fetch weather data")


async def _cached(
    request: Request,
    cache_key: str,
    ttl: int,
    fetch_fn: Callable[[], Awaitable[Any]],
    fresh: bool = False,
    unit: str = "celsius",
) -> ORJSONResponse:
    """Serve `cache_key` through the store and wrap it in an APIResponse."""
    store: CoalescingStore = request.app.state.store
    start_time = time.perf_counter()

    try:
        result = await store.fetch_result(cache_key, fetch_fn, ttl, fresh=fresh)
    except ProducerError as e:
        print(f"[api] {cache_key} failed: {e.cause!r}")
        raise _upstream_error(e)
    telemetry.record_fetch(
        cache_key,
        result.state,
        result.waiters,
        (time.perf_counter() - start_time) * 1000,
    )

    with telemetry.stage("convert"):
        data = convert_weather_data(result.value, unit)

    layer = _LAYERS[result.state]
    total_time = (time.perf_counter() - start_time) * 1000

    body = APIResponse(
        success=True,
        data=data,
        meta={
            "response_time_ms": round(total_time, 1),
            "cache_hit": layer != "live",
            "cache_layer": layer,
        },
    )
    response = ORJSONResponse(body.model_dump())
    response.headers["X-Cache-Layer"] = layer
    response.headers["X-Cache-Hit"] = "1" if layer != "live" else "0"
    return response


# ── Weather Endpoints ───────────────────────────────────────

router = APIRouter()


@router.get("/v1/weather/current")
async def current_weather(
    request: Request,
    city: Optional[str] = Query(default=None, description="City name or lat,lon"),
    unit: str = Query(default="celsius"),
    fresh: str = Query(default="false", description="Bypass cache"),
):
    """Current conditions."""
    location, unit = _location(city), _check_unit(unit)
    provider: WeatherProvider = request.app.state.provider
    return await _cached(
        request,
        f"current:{_city_key(city)}",
        CacheConfig.TTL_CURRENT,
        lambda: provider.current(location),
        fresh=_parse_fresh(fresh),
        unit=unit,
    )


@router.get("/v1/weather/forecast")
async def forecast(
    request: Request,
    city: Optional[str] = Query(default=None),
    days: int = Query(default=7, ge=1),
    unit: str = Query(default="celsius"),
    fresh: str = Query(default="false", description="Bypass cache"),
):
    """Multi-day forecast with hourly data (at most 14 days)."""
    location, unit = _location(city), _check_unit(unit)
    days = min(days, WeatherConfig.MAX_FORECAST_DAYS)
    provider: WeatherProvider = request.app.state.provider
    return await _cached(
        request,
        f"forecast:{_city_key(city)}:{days}",
        CacheConfig.TTL_FORECAST,
        lambda: provider.forecast(location, days),
        fresh=_parse_fresh(fresh),
        unit=unit,
    )


@router.get("/v1/weather/hourly")
async def hourly(
    request: Request,
    city: Optional[str] = Query(default=None),
    hours: int = Query(default=24, ge=1, le=72),
    unit: str = Query(default="celsius"),
    fresh: str = Query(default="false", description="Bypass cache"),
):
    """Hourly forecast for the next `hours` hours."""
    location, unit = _location(city), _check_unit(unit)
    provider: WeatherProvider = request.app.state.provider
    return await _cached(
        request,
        f"hourly:{_city_key(city)}:{hours}",
        CacheConfig.TTL_HOURLY,
        lambda: provider.hourly(location, hours),
        fresh=_parse_fresh(fresh),
        unit=unit,
    )


@router.get("/v1/weather/historical")
async def historical(
    request: Request,
    city: Optional[str] = Query(default=None),
    date: Optional[str] = Query(default=None, description="YYYY-MM-DD"),
    unit: str = Query(default="celsius"),
    fresh: str = Query(default="false", description="Bypass cache"),
):
    """Observed weather for a past date."""
    location, unit, date = _location(city), _check_unit(unit), _check_date(date)
    provider: WeatherProvider = request.app.state.provider
    return await _cached(
        request,
        f"historical:{_city_key(city)}:{date}",
        CacheConfig.TTL_HISTORICAL,
        lambda: provider.historical(location, date),
        fresh=_parse_fresh(fresh),
        unit=unit,
    )


@router.get("/v1/weather/future")
async def future(
    request: Request,
    city: Optional[str] = Query(default=None),
    date: Optional[str] = Query(default=None, description="YYYY-MM-DD"),
    unit: str = Query(default="celsius"),
    fresh: str = Query(default="false", description="Bypass cache"),
):
    """Forecast for a single future date."""
    location, unit, date = _location(city), _check_unit(unit), _check_date(date)
    provider: WeatherProvider = request.app.state.provider
    return await _cached(
        request,
        f"future:{_city_key(city)}:{date}",
        CacheConfig.TTL_FUTURE,
        lambda: provider.future(location, date),
        fresh=_parse_fresh(fresh),
        unit=unit,
    )


@router.get("/v1/weather/search")
async def search_cities(
    request: Request,
    q: Optional[str] = Query(default=None, description="City name prefix"),
    limit: int = Query(default=5, ge=1, le=20),
):
    """City autocomplete."""
    if not q or len(q.strip()) < 2:
        raise HTTPException(status_code=400, detail="Query must be at least 2 characters")
    query = q.strip()
    provider: WeatherProvider = request.app.state.provider
    return await _cached(
        request,
        f"search:{query.lower()}:{limit}",
        CacheConfig.TTL_SEARCH,
        lambda: provider.search(query, limit),
    )


# ── Cache Endpoints ─────────────────────────────────────────


def _require_admin(request: Request) -> CoalescingStore:
    if not request.app.state.admin_enabled:
        raise HTTPException(status_code=404, detail="Endpoint not found")
    return request.app.state.store


@router.get("/v1/cache/stats")
async def cache_stats(request: Request):
    """Hit/miss counters, live entries and in-flight fetches."""
    return _require_admin(request).stats()


@router.delete("/v1/cache")
async def flush_cache(request: Request):
    store = _require_admin(request)
    store.flush()
    return {"success": True}


@router.delete("/v1/cache/{key:path}")
async def delete_cache_key(key: str, request: Request):
    store = _require_admin(request)
    existed = store.has(key)
    store.delete(key)
    return {"success": True, "deleted": existed}


# ── App ─────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    print("Starting SkyCache API...")

    if app.state.provider is None:
        app.state.provider = get_provider()
    if app.state.store is None:
        app.state.store = CoalescingStore(
            default_ttl=CacheConfig.DEFAULT_TTL,
            sweep_interval=CacheConfig.SWEEP_INTERVAL,
        )
    await app.state.store.start()
    print(f"Provider: {app.state.provider.name}, default TTL {app.state.store.default_ttl:g}s")

    yield

    print("Shutting down SkyCache API...")
    await app.state.store.close()
    await app.state.provider.close()


def create_app(
    provider: Optional[WeatherProvider] = None,
    store: Optional[CoalescingStore] = None,
    admin_enabled: Optional[bool] = None,
    api_limit: Optional[str] = None,
    weather_limit: Optional[str] = None,
) -> FastAPI:
    """
    Build the app. Arguments left as None come from the environment; passing
    either limit turns rate limiting on regardless of RATE_LIMIT_ENABLED.
    """
    app = FastAPI(
        title="SkyCache API",
        description="Weather proxy with normalized responses and request-coalescing cache.",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.provider = provider
    app.state.store = store
    app.state.admin_enabled = CacheConfig.ADMIN_ENABLED if admin_enabled is None else admin_enabled

    if api_limit or weather_limit or RateLimitConfig.ENABLED:
        rules = build_rules(
            api_limit or RateLimitConfig.API_LIMIT,
            weather_limit or RateLimitConfig.WEATHER_LIMIT,
        )
        app.add_middleware(RateLimitMiddleware, rules=rules)

    # added after the limiter so 429s still carry CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_timing(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or telemetry.new_request_id()
        token = telemetry.begin(request_id)
        try:
            response = await call_next(request)
            header = telemetry.server_timing_header()
            if header:
                response.headers["Server-Timing"] = header
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            telemetry.end(token)

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        body = APIResponse(success=False, error=str(exc.detail))
        return ORJSONResponse(body.model_dump(), status_code=exc.status_code)

    @app.get("/")
    async def root():
        return {
            "name": "SkyCache API",
            "version": "0.1.0",
            "status": "running",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health(request: Request):
        store = request.app.state.store
        provider = request.app.state.provider
        return {
            "status": "healthy",
            "provider": provider.name if provider else None,
            "cache_keys": store.stats()["keys"] if store else 0,
        }

    app.include_router(router)
    return app


app = create_app()


# Run with: uvicorn api.src.main:app --reload
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.src.main:app", host="0.0.0.0", port=8000, reload=True)
