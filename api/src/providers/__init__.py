# SkyCache weather providers
#
# Every provider returns the same normalized payloads: temperatures in
# Celsius, wind in m/s, pressure in hPa, `dt` as unix seconds and
# `weather = {icon, description, code}`.
from ..config import WeatherConfig
from .base import City, Location, ProviderError, WeatherProvider, parse_location
from .openmeteo import OpenMeteoProvider
from .weatherapi import WeatherApiProvider


def get_provider(name: str = "") -> WeatherProvider:
    """Build the provider named by `name` (defaults to WEATHER_API_PROVIDER)."""
    name = (name or WeatherConfig.PROVIDER).lower()
    if name == "openmeteo":
        return OpenMeteoProvider()
    if name == "weatherapi":
        return WeatherApiProvider()
    raise ValueError(f"Provider {name} not supported")


__all__ = [
    "City",
    "Location",
    "OpenMeteoProvider",
    "ProviderError",
    "WeatherApiProvider",
    "WeatherProvider",
    "get_provider",
    "parse_location",
]
