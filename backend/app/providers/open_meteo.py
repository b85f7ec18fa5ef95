"""Open-Meteo forecast client.

Raw payloads are validated here and converted into ``WeatherReport`` so the
rest of the monitor only sees the enumerated weather conditions. WMO codes map
to conditions as follows:

    0        clear          61-64   rain           80-81  rain
    1-3      cloudy         65      heavy_rain     82     heavy_rain
    45-48    fog            66-67   rain           85-86  snow
    51-57    rain           71-77   snow           95     storm
                                                   96-99  hail

Anything else maps to clear.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from app.providers.errors import MalformedProviderResponse
from app.providers.http import request_json
from app.schemas.conditions import (
    CurrentWeather,
    DailyForecast,
    HourlyForecast,
    Point,
    WeatherAlert,
    WeatherCondition,
    WeatherReport,
)
from app.services.cache import LocationCache
from app.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)
PROVIDER_NAME = "open-meteo"
FORECAST_HOURS = 6
FORECAST_DAYS = 3
CURRENT_FIELDS = (
    "temperature_2m,relative_humidity_2m,apparent_temperature,precipitation,"
    "weather_code,wind_speed_10m,wind_direction_10m,visibility"
)
HOURLY_FIELDS = "temperature_2m,precipitation_probability,weather_code,visibility"
DAILY_FIELDS = "weather_code,temperature_2m_max,temperature_2m_min,precipitation_sum,precipitation_probability_max"
SEVERE_WEATHER_CODES = {65, 66, 67, 75, 77, 82, 85, 86, 95, 96, 99}
WEATHER_DESCRIPTIONS = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
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
COMPASS_POINTS = ["N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE", "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW"]


class _Current(BaseModel):
    temperature_2m: float | None = None
    relative_humidity_2m: float | None = None
    apparent_temperature: float | None = None
    precipitation: float | None = None
    weather_code: int | None = None
    wind_speed_10m: float | None = None
    wind_direction_10m: float | None = None
    # metres
    visibility: float | None = None


class _Hourly(BaseModel):
    time: list[datetime] = Field(default_factory=list)
    temperature_2m: list[float | None] = Field(default_factory=list)
    precipitation_probability: list[float | None] = Field(default_factory=list)
    weather_code: list[int | None] = Field(default_factory=list)
    visibility: list[float | None] = Field(default_factory=list)


class _Daily(BaseModel):
    time: list[date] = Field(default_factory=list)
    weather_code: list[int | None] = Field(default_factory=list)
    temperature_2m_max: list[float | None] = Field(default_factory=list)
    temperature_2m_min: list[float | None] = Field(default_factory=list)
    precipitation_sum: list[float | None] = Field(default_factory=list)
    precipitation_probability_max: list[float | None] = Field(default_factory=list)


class _ForecastResponse(BaseModel):
    current: _Current | None = None
    hourly: _Hourly | None = None
    daily: _Daily | None = None


def map_weather_code(code: int | None) -> WeatherCondition:
    if code is None:
        return "clear"
    if code == 0:
        return "clear"
    if 1 <= code <= 3:
        return "cloudy"
    if 45 <= code <= 48:
        return "fog"
    if 51 <= code <= 57:
        return "rain"
    if 61 <= code <= 65:
        return "heavy_rain" if code >= 65 else "rain"
    if 66 <= code <= 67:
        return "rain"
    if 71 <= code <= 77:
        return "snow"
    if 80 <= code <= 82:
        return "heavy_rain" if code >= 82 else "rain"
    if 85 <= code <= 86:
        return "snow"
    if 95 <= code <= 99:
        return "hail" if code >= 96 else "storm"
    return "clear"


def describe_weather_code(code: int | None) -> str:
    if code is None:
        return "Unknown conditions"
    return WEATHER_DESCRIPTIONS.get(code, "Unknown conditions")


def degrees_to_direction(degrees: float | None) -> str:
    if degrees is None:
        return "N/A"
    return COMPASS_POINTS[round(float(degrees) / 22.5) % 16]


def _metres_to_km(value: float | None) -> float | None:
    return value / 1000 if value is not None else None


def _at(values: list[Any], idx: int) -> Any:
    return values[idx] if idx < len(values) else None


def build_alerts(current: _Current | None, *, now: datetime | None = None) -> list[WeatherAlert]:
    if current is None:
        return []

    started = now or datetime.utcnow()
    alerts: list[WeatherAlert] = []

    precipitation = current.precipitation or 0
    if precipitation > 10:
        alerts.append(
            WeatherAlert(
                type="precipitation",
                severity="high" if precipitation > 20 else "medium",
                message=f"Heavy precipitation detected: {precipitation}mm",
                start_time=started,
            )
        )

    visibility = current.visibility
    if visibility is not None and visibility < 2000:
        alerts.append(
            WeatherAlert(
                type="visibility",
                severity="high" if visibility < 500 else "medium",
                message=f"Low visibility: {visibility / 1000:.1f}km",
                start_time=started,
            )
        )

    wind = current.wind_speed_10m or 0
    if wind > 50:
        alerts.append(
            WeatherAlert(
                type="wind",
                severity="high" if wind > 70 else "medium",
                message=f"Strong winds: {wind}km/h",
                start_time=started,
            )
        )

    if current.weather_code in SEVERE_WEATHER_CODES:
        alerts.append(
            WeatherAlert(
                type="severe_weather",
                severity="high",
                message=describe_weather_code(current.weather_code),
                start_time=started,
            )
        )

    return alerts


def parse_forecast_payload(payload: Any) -> WeatherReport:
    try:
        parsed = _ForecastResponse.model_validate(payload or {})
    except ValidationError as exc:
        raise MalformedProviderResponse(
            "Open-Meteo payload malformed",
            code="PROVIDER_MALFORMED",
            provider=PROVIDER_NAME,
            details={"errors": exc.errors(include_url=False)[:3]},
        ) from exc

    current = None
    if parsed.current is not None:
        raw = parsed.current
        current = CurrentWeather(
            condition=map_weather_code(raw.weather_code),
            weather_code=raw.weather_code,
            temperature_c=raw.temperature_2m,
            feels_like_c=raw.apparent_temperature,
            humidity_pct=raw.relative_humidity_2m,
            wind_speed_kmh=raw.wind_speed_10m,
            wind_direction=degrees_to_direction(raw.wind_direction_10m),
            visibility_km=_metres_to_km(raw.visibility),
            precipitation_mm=raw.precipitation,
            description=describe_weather_code(raw.weather_code),
        )

    hourly: list[HourlyForecast] = []
    if parsed.hourly is not None:
        series = parsed.hourly
        for idx, stamp in enumerate(series.time[:FORECAST_HOURS]):
            hourly.append(
                HourlyForecast(
                    time=stamp,
                    condition=map_weather_code(_at(series.weather_code, idx)),
                    temperature_c=_at(series.temperature_2m, idx),
                    precipitation_probability=_at(series.precipitation_probability, idx),
                    visibility_km=_metres_to_km(_at(series.visibility, idx)),
                )
            )

    daily: list[DailyForecast] = []
    if parsed.daily is not None:
        series = parsed.daily
        for idx, day in enumerate(series.time):
            daily.append(
                DailyForecast(
                    day=day,
                    condition=map_weather_code(_at(series.weather_code, idx)),
                    temperature_max_c=_at(series.temperature_2m_max, idx),
                    temperature_min_c=_at(series.temperature_2m_min, idx),
                    precipitation_sum_mm=_at(series.precipitation_sum, idx),
                    precipitation_probability=_at(series.precipitation_probability_max, idx),
                )
            )

    return WeatherReport(
        current=current,
        hourly=hourly,
        daily=daily,
        alerts=build_alerts(parsed.current),
        last_updated=datetime.utcnow(),
    )


class OpenMeteoWeatherProvider:
    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        cache: LocationCache | None = None,
    ) -> None:
        self.settings = get_settings()
        self._transport = transport
        self.cache = cache or LocationCache("weather", self.settings.weather_cache_ttl_seconds)

    async def fetch_weather(self, point: Point) -> WeatherReport:
        lng, lat = point
        # Cache backends are blocking clients; keep them off the event loop.
        payload = await asyncio.to_thread(self.cache.get, lat, lng)
        if payload is None:
            async with httpx.AsyncClient(
                timeout=self.settings.weather_timeout_seconds,
                transport=self._transport,
            ) as http:
                payload = await request_json(
                    http,
                    "GET",
                    self.settings.open_meteo_url,
                    provider=PROVIDER_NAME,
                    params={
                        "latitude": lat,
                        "longitude": lng,
                        "current": CURRENT_FIELDS,
                        "hourly": HOURLY_FIELDS,
                        "daily": DAILY_FIELDS,
                        "timezone": "auto",
                        "forecast_days": FORECAST_DAYS,
                    },
                    max_attempts=self.settings.provider_max_attempts,
                )
            report = parse_forecast_payload(payload)
            await asyncio.to_thread(self.cache.put, lat, lng, payload)
            return report

        LOGGER.debug("Weather cache hit for %s,%s", lat, lng)
        return parse_forecast_payload(payload)


_PROVIDER: OpenMeteoWeatherProvider | None = None


def get_weather_provider() -> OpenMeteoWeatherProvider:
    global _PROVIDER
    if _PROVIDER is None:
        _PROVIDER = OpenMeteoWeatherProvider()
    return _PROVIDER
