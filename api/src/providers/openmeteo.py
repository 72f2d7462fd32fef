"""
SkyCache Open-Meteo provider
Free weather API, no key required. City names are geocoded first, then
forecast/archive endpoints are queried by coordinates. Times are requested
as unix timestamps so normalized `dt` fields match WeatherAPI.com.
"""

from typing import Any, Dict, List, Optional

import httpx

from ..config import WeatherConfig
from .base import (
    City,
    Location,
    ProviderError,
    WeatherProvider,
    kph_to_ms,
    percent_to_ratio,
)

WEATHER_CODES: Dict[int, str] = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Foggy",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    56: "Light freezing drizzle",
    57: "Dense freezing drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Slight snow fall",
    73: "Moderate snow fall",
    75: "Heavy snow fall",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}

CURRENT_FIELDS = [
    "temperature_2m",
    "relative_humidity_2m",
    "apparent_temperature",
    "precipitation",
    "weather_code",
    "cloud_cover",
    "surface_pressure",
    "wind_speed_10m",
    "wind_direction_10m",
]

HOURLY_FIELDS = [
    "temperature_2m",
    "apparent_temperature",
    "precipitation_probability",
    "precipitation",
    "weather_code",
    "pressure_msl",
    "wind_speed_10m",
    "wind_direction_10m",
    "relative_humidity_2m",
]

DAILY_FIELDS = [
    "weather_code",
    "temperature_2m_max",
    "temperature_2m_min",
    "sunrise",
    "sunset",
    "precipitation_sum",
    "precipitation_probability_max",
    "wind_speed_10m_max",
]


def weather_description(code: Optional[int]) -> str:
    return WEATHER_CODES.get(code, "Unknown")


def weather_icon(code: Optional[int]) -> str:
    if code is None:
        return "01d"
    if code in (0, 1):
        return "01d"
    if code == 2:
        return "02d"
    if code == 3:
        return "03d"
    if code in (45, 48):
        return "50d"
    if 51 <= code <= 57 or 80 <= code <= 82:
        return "09d"
    if 61 <= code <= 67:
        return "10d"
    if 71 <= code <= 77 or 85 <= code <= 86:
        return "13d"
    if 95 <= code <= 99:
        return "11d"
    return "01d"


def _weather(code: Optional[int]) -> Dict[str, Any]:
    return {
        "icon": weather_icon(code),
        "description": weather_description(code),
        "code": code,
    }


def _at(block: Dict[str, Any], field: str, idx: int) -> Any:
    values = block.get(field) or []
    return values[idx] if idx < len(values) else None


def _mean(*values: Optional[float]) -> Optional[float]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


def parse_hourly(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    block = data.get("hourly") or {}
    return [
        {
            "dt": ts,
            "temp": _at(block, "temperature_2m", i),
            "feels_like": _at(block, "apparent_temperature", i),
            "humidity": _at(block, "relative_humidity_2m", i),
            "pressure": _at(block, "pressure_msl", i),
            "wind_speed": kph_to_ms(_at(block, "wind_speed_10m", i)),
            "wind_deg": _at(block, "wind_direction_10m", i),
            "pop": percent_to_ratio(_at(block, "precipitation_probability", i)),
            "precipitation": _at(block, "precipitation", i),
            "weather": _weather(_at(block, "weather_code", i)),
        }
        for i, ts in enumerate(block.get("time") or [])
    ]


def parse_daily(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    block = data.get("daily") or {}
    result = []
    for i, ts in enumerate(block.get("time") or []):
        t_min = _at(block, "temperature_2m_min", i)
        t_max = _at(block, "temperature_2m_max", i)
        result.append({
            "dt": ts,
            "temp": {"day": _mean(t_min, t_max), "min": t_min, "max": t_max},
            "humidity": None,
            "wind_speed": kph_to_ms(_at(block, "wind_speed_10m_max", i)),
            "pop": percent_to_ratio(_at(block, "precipitation_probability_max", i)),
            "precipitation": _at(block, "precipitation_sum", i),
            "weather": _weather(_at(block, "weather_code", i)),
            "sunrise": _at(block, "sunrise", i),
            "sunset": _at(block, "sunset", i),
        })
    return result


class OpenMeteoProvider(WeatherProvider):
    name = "openmeteo"

    def __init__(
        self,
        base_url: str = WeatherConfig.OPEN_METEO_BASE_URL,
        geocoding_url: str = WeatherConfig.OPEN_METEO_GEOCODING_URL,
        archive_url: str = WeatherConfig.OPEN_METEO_ARCHIVE_URL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(client=client)
        self._base_url = base_url.rstrip("/")
        self._geocoding_url = geocoding_url.rstrip("/")
        self._archive_url = archive_url.rstrip("/")

    async def geocode(self, location: Location) -> Dict[str, Any]:
        """Resolve a location to {name, lat, lon}. Coordinates pass through."""
        if location.is_coords:
            return {
                "name": f"{location.lat}, {location.lon}",
                "lat": location.lat,
                "lon": location.lon,
            }
        # "Bengaluru, Karnataka, India" -> "Bengaluru" geocodes more reliably
        name = (location.city or "").split(",")[0].strip()
        data = await self._get_json(
            f"{self._geocoding_url}/search",
            {"name": name, "count": 1, "language": "en", "format": "json"},
        )
        results = (data or {}).get("results") or []
        if not results:
            raise ProviderError(f"City not found: {name}", status=404)
        r = results[0]
        return {
            "name": f"{r.get('name')}, {r.get('country')}",
            "lat": r.get("latitude"),
            "lon": r.get("longitude"),
        }

    async def _by_coords(self, url: str, place: Dict[str, Any], **params) -> Dict[str, Any]:
        params.update({
            "latitude": place["lat"],
            "longitude": place["lon"],
            "timezone": "auto",
            "timeformat": "unixtime",
        })
        return await self._get_json(url, params)

    def _header(self, place: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "cityName": place["name"],
            "lat": place["lat"],
            "lon": place["lon"],
            "timezone": data.get("timezone"),
        }

    async def current(self, location: Location) -> dict:
        place = await self.geocode(location)
        data = await self._by_coords(
            f"{self._base_url}/forecast", place, current=",".join(CURRENT_FIELDS),
        )
        cur = data.get("current")
        if not cur:
            raise ProviderError("openmeteo returned no current conditions")
        code = cur.get("weather_code")
        result = self._header(place, data)
        result["current"] = {
            "temp": cur.get("temperature_2m"),
            "feels_like": cur.get("apparent_temperature"),
            "humidity": cur.get("relative_humidity_2m"),
            "pressure": cur.get("surface_pressure"),
            "wind_speed": kph_to_ms(cur.get("wind_speed_10m")),
            "wind_deg": cur.get("wind_direction_10m"),
            "clouds": cur.get("cloud_cover"),
            "weather": _weather(code),
            "last_updated": cur.get("time"),
        }
        return result

    async def forecast(self, location: Location, days: int = 7) -> dict:
        days = max(1, min(days, WeatherConfig.MAX_FORECAST_DAYS))
        place = await self.geocode(location)
        data = await self._by_coords(
            f"{self._base_url}/forecast",
            place,
            daily=",".join(DAILY_FIELDS),
            hourly=",".join(HOURLY_FIELDS),
            forecast_days=days,
        )
        result = self._header(place, data)
        result["alerts"] = []
        result["hourly"] = parse_hourly(data)
        result["daily"] = parse_daily(data)
        return result

    async def _single_day(self, url: str, location: Location, date: str) -> dict:
        place = await self.geocode(location)
        data = await self._by_coords(
            url,
            place,
            daily="temperature_2m_max,temperature_2m_min,precipitation_sum",
            hourly=",".join(f for f in HOURLY_FIELDS if f != "precipitation_probability"),
            start_date=date,
            end_date=date,
        )
        daily = data.get("daily") or {}
        if not daily.get("time"):
            raise ProviderError(f"No data for {date}", status=404)
        t_max = _at(daily, "temperature_2m_max", 0)
        t_min = _at(daily, "temperature_2m_min", 0)
        return {
            "cityName": place["name"],
            "lat": place["lat"],
            "lon": place["lon"],
            "date": date,
            "hourly": parse_hourly(data),
            "summary": {
                "maxtemp_c": t_max,
                "mintemp_c": t_min,
                "avgtemp_c": _mean(t_min, t_max),
                "totalprecip_mm": _at(daily, "precipitation_sum", 0),
            },
        }

    async def historical(self, location: Location, date: str) -> dict:
        return await self._single_day(f"{self._archive_url}/archive", location, date)

    async def future(self, location: Location, date: str) -> dict:
        return await self._single_day(f"{self._base_url}/forecast", location, date)

    async def search(self, query: str, limit: int = 5) -> List[dict]:
        data = await self._get_json(
            f"{self._geocoding_url}/search",
            {"name": query, "count": limit, "language": "en", "format": "json"},
        )
        return [
            City(
                name=r.get("name", ""),
                country=r.get("country", ""),
                region=r.get("admin1") or "",
                lat=r.get("latitude"),
                lon=r.get("longitude"),
            ).to_dict()
            for r in ((data or {}).get("results") or [])[:limit]
        ]
