"""
SkyCache WeatherAPI.com provider
Current conditions (with air quality), forecast with alerts, history,
future and city search. Responses are normalized to the shared schema.
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

# WeatherAPI.com error code for an unknown location
_NO_LOCATION = 1006


def _condition(raw: Dict[str, Any]) -> Dict[str, Any]:
    cond = raw.get("condition") or {}
    return {
        "icon": cond.get("icon"),
        "description": cond.get("text"),
        "code": cond.get("code"),
    }


def _city_name(data: Dict[str, Any]) -> str:
    loc = data["location"]
    return f"{loc['name']}, {loc['country']}"


def _air_quality(current: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    aq = current.get("air_quality")
    if not aq:
        return None
    return {
        "pm2_5": aq.get("pm2_5"),
        "pm10": aq.get("pm10"),
        "us_epa_index": aq.get("us-epa-index"),
        "gb_defra_index": aq.get("gb-defra-index"),
    }


def _hour(h: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "dt": h.get("time_epoch"),
        "temp": h.get("temp_c"),
        "feels_like": h.get("feelslike_c"),
        "humidity": h.get("humidity"),
        "pressure": h.get("pressure_mb"),
        "wind_speed": kph_to_ms(h.get("wind_kph")),
        "wind_deg": h.get("wind_degree"),
        "pop": percent_to_ratio(h.get("chance_of_rain")),
        "precipitation": h.get("precip_mm"),
        "weather": _condition(h),
    }


def _day(d: Dict[str, Any]) -> Dict[str, Any]:
    day = d.get("day") or {}
    astro = d.get("astro") or {}
    return {
        "dt": d.get("date_epoch"),
        "temp": {
            "day": day.get("avgtemp_c"),
            "min": day.get("mintemp_c"),
            "max": day.get("maxtemp_c"),
        },
        "humidity": day.get("avghumidity"),
        "wind_speed": kph_to_ms(day.get("maxwind_kph")),
        "pop": percent_to_ratio(day.get("daily_chance_of_rain")),
        "precipitation": day.get("totalprecip_mm"),
        "weather": _condition(day),
        "sunrise": astro.get("sunrise"),
        "sunset": astro.get("sunset"),
    }


def parse_current(data: Dict[str, Any]) -> Dict[str, Any]:
    loc = data["location"]
    cur = data["current"]
    return {
        "cityName": _city_name(data),
        "lat": loc.get("lat"),
        "lon": loc.get("lon"),
        "timezone": loc.get("tz_id"),
        "current": {
            "temp": cur.get("temp_c"),
            "feels_like": cur.get("feelslike_c"),
            "humidity": cur.get("humidity"),
            "pressure": cur.get("pressure_mb"),
            "wind_speed": kph_to_ms(cur.get("wind_kph")),
            "wind_deg": cur.get("wind_degree"),
            "wind_dir": cur.get("wind_dir"),
            "clouds": cur.get("cloud"),
            "uvi": cur.get("uv"),
            "visibility": cur.get("vis_km"),
            "weather": _condition(cur),
            "last_updated": cur.get("last_updated"),
            "aqi": _air_quality(cur),
        },
    }


def parse_forecast(data: Dict[str, Any]) -> Dict[str, Any]:
    loc = data["location"]
    days = (data.get("forecast") or {}).get("forecastday") or []
    return {
        "cityName": _city_name(data),
        "lat": loc.get("lat"),
        "lon": loc.get("lon"),
        "timezone": loc.get("tz_id"),
        "alerts": (data.get("alerts") or {}).get("alert") or [],
        "hourly": [_hour(h) for d in days for h in d.get("hour") or []],
        "daily": [_day(d) for d in days],
    }


def parse_single_day(data: Dict[str, Any], date: str, with_totals: bool) -> Dict[str, Any]:
    """History/future responses: one forecastday plus a summary block."""
    loc = data["location"]
    days = (data.get("forecast") or {}).get("forecastday") or []
    if not days:
        raise ProviderError(f"No data for {date}", status=404)
    first = days[0]
    day = first.get("day") or {}
    summary = {
        "maxtemp_c": day.get("maxtemp_c"),
        "mintemp_c": day.get("mintemp_c"),
        "avgtemp_c": day.get("avgtemp_c"),
    }
    if with_totals:
        summary["totalprecip_mm"] = day.get("totalprecip_mm")
        summary["avghumidity"] = day.get("avghumidity")
    return {
        "cityName": _city_name(data),
        "lat": loc.get("lat"),
        "lon": loc.get("lon"),
        "date": date,
        "hourly": [_hour(h) for h in first.get("hour") or []],
        "summary": summary,
    }


class WeatherApiProvider(WeatherProvider):
    name = "weatherapi"

    def __init__(
        self,
        api_key: str = WeatherConfig.WEATHER_API_KEY,
        base_url: str = WeatherConfig.WEATHERAPI_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("WEATHER_API_KEY is required for the weatherapi provider")
        super().__init__(client=client)
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")

    async def _call(self, endpoint: str, **params) -> Any:
        params["key"] = self._api_key
        return await self._get_json(f"{self._base_url}/{endpoint}", params)

    def _error_detail(self, resp: httpx.Response) -> str:
        try:
            err = resp.json().get("error") or {}
        except ValueError:
            err = {}
        return err.get("message") or f"HTTP {resp.status_code}"

    def _status_for(self, resp: httpx.Response) -> int:
        try:
            code = (resp.json().get("error") or {}).get("code")
        except ValueError:
            code = None
        if code == _NO_LOCATION:
            return 404
        return 502

    async def current(self, location: Location) -> dict:
        data = await self._call("current.json", q=location.query(), aqi="yes")
        return parse_current(data)

    async def forecast(self, location: Location, days: int = 3) -> dict:
        days = max(1, min(days, WeatherConfig.MAX_FORECAST_DAYS))
        data = await self._call(
            "forecast.json", q=location.query(), days=days, aqi="yes", alerts="yes",
        )
        return parse_forecast(data)

    async def historical(self, location: Location, date: str) -> dict:
        data = await self._call("history.json", q=location.query(), dt=date)
        return parse_single_day(data, date, with_totals=True)

    async def future(self, location: Location, date: str) -> dict:
        data = await self._call("future.json", q=location.query(), dt=date)
        return parse_single_day(data, date, with_totals=False)

    async def search(self, query: str, limit: int = 5) -> List[dict]:
        data = await self._call("search.json", q=query)
        return [
            City(
                name=c.get("name", ""),
                country=c.get("country", ""),
                region=c.get("region", ""),
                lat=c.get("lat"),
                lon=c.get("lon"),
            ).to_dict()
            for c in (data or [])[:limit]
        ]
