import asyncio
import copy
import time

import httpx
import pytest

from app.providers.errors import MalformedProviderResponse, ProviderUnavailable
from app.providers.open_meteo import (
    OpenMeteoWeatherProvider,
    build_alerts,
    degrees_to_direction,
    map_weather_code,
    parse_forecast_payload,
    _Current,
)
from app.schemas.conditions import RevisedEta
from app.services.cache import InMemoryCache, LocationCache
from app.services.recalculation import decide


FORECAST_PAYLOAD = {
    "current": {
        "temperature_2m": 14.2,
        "relative_humidity_2m": 81,
        "apparent_temperature": 12.9,
        "precipitation": 0.4,
        "weather_code": 61,
        "wind_speed_10m": 18.0,
        "wind_direction_10m": 270,
        "visibility": 8000,
    },
    "hourly": {
        "time": [f"2024-05-01T{hour:02d}:00" for hour in range(10)],
        "temperature_2m": [14.0] * 10,
        "precipitation_probability": [60] * 10,
        "weather_code": [61, 61, 63, 65, 3, 2, 1, 0, 0, 0],
        "visibility": [8000] * 10,
    },
    "daily": {
        "time": ["2024-05-01", "2024-05-02"],
        "weather_code": [61, 95],
        "temperature_2m_max": [16.0, 18.0],
        "temperature_2m_min": [10.0, 11.0],
        "precipitation_sum": [4.2, 12.0],
        "precipitation_probability_max": [70, 90],
    },
}


@pytest.mark.parametrize(
    "code,expected",
    [
        (0, "clear"),
        (1, "cloudy"),
        (2, "cloudy"),
        (3, "cloudy"),
        (45, "fog"),
        (48, "fog"),
        (51, "rain"),
        (57, "rain"),
        (61, "rain"),
        (64, "rain"),
        (65, "heavy_rain"),
        (66, "rain"),
        (67, "rain"),
        (71, "snow"),
        (77, "snow"),
        (80, "rain"),
        (81, "rain"),
        (82, "heavy_rain"),
        (85, "snow"),
        (86, "snow"),
        (95, "storm"),
        (96, "hail"),
        (99, "hail"),
        (4, "clear"),
        (None, "clear"),
    ],
)
def test_map_weather_code(code, expected):
    assert map_weather_code(code) == expected


def test_degrees_to_direction():
    assert degrees_to_direction(0) == "N"
    assert degrees_to_direction(90) == "E"
    assert degrees_to_direction(350) == "N"
    assert degrees_to_direction(None) == "N/A"


def test_parse_forecast_payload_converts_units_and_truncates():
    report = parse_forecast_payload(FORECAST_PAYLOAD)

    assert report.current.condition == "rain"
    assert report.current.visibility_km == 8.0
    assert report.current.wind_direction == "W"
    assert report.current.description == "Slight rain"
    assert len(report.hourly) == 6
    assert report.hourly[3].condition == "heavy_rain"
    assert [day.condition for day in report.daily] == ["rain", "storm"]
    assert report.alerts == []


def test_build_alerts_thresholds():
    alerts = build_alerts(_Current(precipitation=25, visibility=1500, wind_speed_10m=55, weather_code=95))
    by_type = {alert.type: alert.severity for alert in alerts}
    assert by_type == {
        "precipitation": "high",
        "visibility": "medium",
        "wind": "medium",
        "severe_weather": "high",
    }

    quiet = build_alerts(_Current(precipitation=10, visibility=2000, wind_speed_10m=50, weather_code=3))
    assert quiet == []

    harsh = build_alerts(_Current(precipitation=12, visibility=300, wind_speed_10m=75))
    assert {alert.type: alert.severity for alert in harsh} == {
        "precipitation": "medium",
        "visibility": "high",
        "wind": "high",
    }


def test_parse_forecast_payload_rejects_wrong_shape():
    with pytest.raises(MalformedProviderResponse):
        parse_forecast_payload({"current": {"weather_code": "not-a-code"}})


def test_fetch_weather_uses_cache_for_nearby_points():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=FORECAST_PAYLOAD)

    provider = OpenMeteoWeatherProvider(
        transport=httpx.MockTransport(handler),
        cache=LocationCache("weather", 300, backend=InMemoryCache()),
    )

    first = asyncio.run(provider.fetch_weather((-122.4194, 37.7749)))
    second = asyncio.run(provider.fetch_weather((-122.4191, 37.7751)))

    assert len(calls) == 1
    assert calls[0].url.params["latitude"] == "37.7749"
    assert first.current.condition == second.current.condition == "rain"


def test_fetch_weather_raises_provider_error_on_rejection():
    provider = OpenMeteoWeatherProvider(
        transport=httpx.MockTransport(lambda request: httpx.Response(400, json={"reason": "bad"})),
        cache=LocationCache("weather", 0, backend=InMemoryCache()),
    )

    with pytest.raises(ProviderUnavailable) as exc:
        asyncio.run(provider.fetch_weather((-122.4194, 37.7749)))

    assert exc.value.status_code == 400


def test_zero_visibility_is_kept_and_flagged():
    payload = copy.deepcopy(FORECAST_PAYLOAD)
    payload["current"]["visibility"] = 0

    report = parse_forecast_payload(payload)

    assert report.current.visibility_km == 0
    assert "Very low visibility" in decide(None, report, RevisedEta()).reasons


class _SlowCache(InMemoryCache):
    def get(self, key):
        time.sleep(0.2)
        return super().get(key)

    def set(self, key, value, ttl_seconds=None):
        time.sleep(0.2)
        super().set(key, value, ttl_seconds)


def test_slow_cache_does_not_stall_event_loop():
    provider = OpenMeteoWeatherProvider(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=FORECAST_PAYLOAD)),
        cache=LocationCache("weather", 300, backend=_SlowCache()),
    )

    async def scenario():
        ticks = 0
        done = asyncio.Event()

        async def ticker():
            nonlocal ticks
            while not done.is_set():
                ticks += 1
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        report = await provider.fetch_weather((-122.4194, 37.7749))
        done.set()
        await task
        return report, ticks

    report, ticks = asyncio.run(scenario())

    assert report.current.condition == "rain"
    # 0.4 s of blocking cache I/O would otherwise leave the ticker at one tick.
    assert ticks > 10
