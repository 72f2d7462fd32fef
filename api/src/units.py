"""
Temperature unit conversion for normalized weather payloads.

Providers always return Celsius. Conversion happens per response on a deep
copy, so payloads shared through the cache are never mutated.
"""

import copy
from typing import Any, Optional

UNITS = ("celsius", "fahrenheit")


def celsius_to_fahrenheit(celsius: Optional[float]) -> Optional[float]:
    if celsius is None:
        return None
    return celsius * 9 / 5 + 32


def fahrenheit_to_celsius(fahrenheit: Optional[float]) -> Optional[float]:
    if fahrenheit is None:
        return None
    return (fahrenheit - 32) * 5 / 9


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def convert_temperature(temp: Any, unit: str = "celsius") -> Any:
    """Convert a number or a {day, min, max} dict; other values pass through."""
    if unit != "fahrenheit" or temp is None:
        return temp
    if _is_number(temp):
        return celsius_to_fahrenheit(temp)
    if isinstance(temp, dict):
        return {
            k: celsius_to_fahrenheit(v) if _is_number(v) else v
            for k, v in temp.items()
        }
    return temp


def convert_weather_data(data: Any, unit: str = "celsius") -> Any:
    """Return `data` with every temperature field expressed in `unit`."""
    if not isinstance(data, dict) or not data or unit == "celsius":
        return data

    out = copy.deepcopy(data)

    current = out.get("current")
    if current:
        for field in ("temp", "feels_like"):
            if field in current:
                current[field] = convert_temperature(current[field], unit)

    for hour in out.get("hourly") or []:
        for field in ("temp", "feels_like"):
            if field in hour:
                hour[field] = convert_temperature(hour[field], unit)

    for day in out.get("daily") or []:
        if "temp" in day:
            day["temp"] = convert_temperature(day["temp"], unit)

    summary = out.get("summary")
    if summary:
        for name in ("maxtemp", "mintemp", "avgtemp"):
            if f"{name}_c" in summary:
                summary[f"{name}_f"] = celsius_to_fahrenheit(summary[f"{name}_c"])

    out["temperatureUnit"] = unit
    return out
