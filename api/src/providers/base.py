"""
SkyCache provider base
Shared HTTP plumbing for weather providers: one httpx.AsyncClient per
provider, error mapping to ProviderError, and location parsing.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..config import WeatherConfig

_COORDS_RE = re.compile(r"^(-?\d+\.?\d*),\s*(-?\d+\.?\d*)$")


class ProviderError(Exception):
    """Upstream weather API failure. `status` is the HTTP status to report."""

    def __init__(self, message: str, status: int = 502):
        super().__init__(message)
        self.status = status


@dataclass(slots=True)
class Location:
    """Parsed location input: a city name or a lat,lon pair."""
    city: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None

    @property
    def is_coords(self) -> bool:
        return self.lat is not None and self.lon is not None

    def query(self) -> str:
        """Location as a single `q` string (WeatherAPI.com format)."""
        if self.is_coords:
            return f"{self.lat},{self.lon}"
        return self.city or ""


@dataclass(slots=True)
class City:
    """City search result."""
    name: str
    country: str
    region: str
    lat: float
    lon: float

    def to_dict(self) -> Dict[str, Any]:
        if self.region:
            display = f"{self.name}, {self.region}, {self.country}"
        else:
            display = f"{self.name}, {self.country}"
        return {
            "name": self.name,
            "country": self.country,
            "region": self.region,
            "lat": self.lat,
            "lon": self.lon,
            "displayName": display,
        }


def parse_location(raw: Optional[str]) -> Location:
    if not raw or not raw.strip():
        raise ProviderError("Location is required", status=400)
    raw = raw.strip()
    m = _COORDS_RE.match(raw)
    if m:
        return Location(lat=float(m.group(1)), lon=float(m.group(2)))
    return Location(city=raw)


def kph_to_ms(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return value / 3.6


def percent_to_ratio(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return value / 100


class WeatherProvider:
    """
    Base class for upstream weather APIs.

    Subclasses implement current/forecast/hourly/historical/future/search and
    return payloads in the normalized schema (see providers/__init__.py).
    """

    name = "base"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = WeatherConfig.REQUEST_TIMEOUT,
    ):
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        try:
            resp = await self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            print(f"[provider] {self.name} timed out: {url}")
            raise ProviderError(f"{self.name} request timed out", status=504) from e
        except httpx.HTTPError as e:
            print(f"[provider] {self.name} request failed: {e!r}")
            raise ProviderError(f"{self.name} request failed: {e}") from e

        if resp.status_code >= 400:
            detail = self._error_detail(resp)
            print(f"[provider] {self.name} returned {resp.status_code}: {detail}")
            raise ProviderError(detail, status=self._status_for(resp))

        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned invalid JSON") from e

    def _error_detail(self, resp: httpx.Response) -> str:
        return f"HTTP {resp.status_code}"

    def _status_for(self, resp: httpx.Response) -> int:
        return 502

    # Interface ----------------------------------------------------------

    async def current(self, location: Location) -> dict:
        raise NotImplementedError

    async def forecast(self, location: Location, days: int = 3) -> dict:
        raise NotImplementedError

    async def hourly(self, location: Location, hours: int = 24) -> dict:
        data = await self.forecast(location, WeatherConfig.HOURLY_SOURCE_DAYS)
        return {
            "cityName": data["cityName"],
            "lat": data["lat"],
            "lon": data["lon"],
            "timezone": data.get("timezone"),
            "hourly": data["hourly"][:hours],
        }

    async def historical(self, location: Location, date: str) -> dict:
        raise NotImplementedError

    async def future(self, location: Location, date: str) -> dict:
        raise NotImplementedError

    async def search(self, query: str, limit: int = 5) -> list[dict]:
        raise NotImplementedError
