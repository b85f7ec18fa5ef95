"""Rules that decide whether a route's stop order should be recomputed.

Every rule is evaluated; reasons keep rule order. Nothing here touches the
network or the database.
"""

from __future__ import annotations

from typing import Callable

from app.schemas.conditions import RecalculationVerdict, RevisedEta, TrafficSummary, WeatherReport


SIGNIFICANT_DELAY_MINUTES = 30
LOW_VISIBILITY_KM = 1.0
SEVERE_CONDITIONS = {"storm", "hail", "heavy_rain"}

Rule = Callable[[TrafficSummary | None, WeatherReport | None, RevisedEta | None], "str | None"]


def _severe_congestion(traffic, weather, eta):  # noqa: ANN001, ARG001
    if traffic is not None and traffic.congestion_level == "severe":
        return "Severe traffic congestion detected"
    return None


def _road_closure(traffic, weather, eta):  # noqa: ANN001, ARG001
    if traffic is not None and any(incident.type == "closure" for incident in traffic.incidents):
        return "Road closure on route"
    return None


def _significant_delay(traffic, weather, eta):  # noqa: ANN001, ARG001
    if eta is not None and eta.delay_minutes > SIGNIFICANT_DELAY_MINUTES:
        return f"Significant delay of {eta.delay_minutes} minutes"
    return None


def _severe_weather(traffic, weather, eta):  # noqa: ANN001, ARG001
    current = weather.current if weather is not None else None
    if current is not None and current.condition in SEVERE_CONDITIONS:
        return f"Severe weather: {current.condition}"
    return None


def _low_visibility(traffic, weather, eta):  # noqa: ANN001, ARG001
    current = weather.current if weather is not None else None
    if current is not None and current.visibility_km is not None and current.visibility_km < LOW_VISIBILITY_KM:
        return "Very low visibility"
    return None


def _severe_alerts(traffic, weather, eta):  # noqa: ANN001, ARG001
    if weather is not None and any(alert.severity == "high" for alert in weather.alerts):
        return "Severe weather alerts"
    return None


RULES: tuple[Rule, ...] = (
    _severe_congestion,
    _road_closure,
    _significant_delay,
    _severe_weather,
    _low_visibility,
    _severe_alerts,
)


def decide(
    traffic: TrafficSummary | None,
    weather: WeatherReport | None,
    eta: RevisedEta | None,
) -> RecalculationVerdict:
    reasons = [reason for rule in RULES if (reason := rule(traffic, weather, eta))]
    return RecalculationVerdict(suggested=bool(reasons), reasons=reasons)
