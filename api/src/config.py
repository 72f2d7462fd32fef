"""
SkyCache upstream configuration.
Weather provider selection, API keys and endpoints (env-driven).
"""

import os


class WeatherConfig:
    # "openmeteo" (no key) or "weatherapi" (WeatherAPI.com, needs a key)
    PROVIDER: str = os.getenv("WEATHER_API_PROVIDER", "openmeteo").strip().lower()

    # Kept on the server; never returned to clients
    WEATHER_API_KEY: str = os.getenv("WEATHER_API_KEY", "")

    # Base URLs
    WEATHERAPI_BASE_URL: str = os.getenv("WEATHERAPI_BASE_URL", "https://api.weatherapi.com/v1")
    OPEN_METEO_BASE_URL: str = os.getenv("OPEN_METEO_BASE_URL", "https://api.open-meteo.com/v1")
    OPEN_METEO_GEOCODING_URL: str = os.getenv(
        "OPEN_METEO_GEOCODING_URL", "https://geocoding-api.open-meteo.com/v1"
    )
    OPEN_METEO_ARCHIVE_URL: str = os.getenv(
        "OPEN_METEO_ARCHIVE_URL", "https://archive-api.open-meteo.com/v1"
    )

    # Upstream request timeout (seconds); the store imposes none of its own
    REQUEST_TIMEOUT: float = float(os.getenv("WEATHER_REQUEST_TIMEOUT", "10"))

    # Provider limits
    MAX_FORECAST_DAYS: int = 14
    HOURLY_SOURCE_DAYS: int = 3


class RateLimitConfig:
    """Per-client request limits, in `limits` notation ("<count>/<period>")."""

    ENABLED: bool = os.getenv("RATE_LIMIT_ENABLED", "true").strip().lower() in ("1", "true", "yes", "on")

    # every /v1/ route
    API_LIMIT: str = os.getenv("RATE_LIMIT_API", "100/15 minutes")

    # /v1/weather/ on top of API_LIMIT; the cache absorbs most of these
    WEATHER_LIMIT: str = os.getenv("RATE_LIMIT_WEATHER", "200/minute")
