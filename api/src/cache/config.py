import os
from typing import Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


def _env_interval(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return float(raw)


class CacheConfig:
    # Default entry lifetime (seconds)
    DEFAULT_TTL: float = float(os.getenv("CACHE_DEFAULT_TTL", "60"))

    # Expiry sweep period (seconds). Unset -> DEFAULT_TTL * 0.2, 0 -> no sweep
    SWEEP_INTERVAL: Optional[float] = _env_interval("CACHE_SWEEP_INTERVAL")

    # Per-route TTLs (seconds)
    TTL_CURRENT: int = 60
    TTL_FORECAST: int = 120      # forecasts change less often
    TTL_HOURLY: int = 120
    TTL_HISTORICAL: int = 3600   # past days never change
    TTL_FUTURE: int = 300
    TTL_SEARCH: int = 300

    # Exposes /v1/cache admin routes (stats, flush, delete)
    ADMIN_ENABLED: bool = _env_bool("CACHE_ADMIN_ENABLED", "false")
