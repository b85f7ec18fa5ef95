from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from app.schemas.conditions import CongestionLevel, RevisedEta, TrafficSummary


def _usable_speeds(current: float | None, free_flow: float | None) -> bool:
    return bool(current) and bool(free_flow)


def congestion_level(current: float | None, free_flow: float | None) -> CongestionLevel:
    if not _usable_speeds(current, free_flow):
        return "unknown"

    ratio = float(current) / float(free_flow)
    if ratio >= 0.9:
        return "free"
    if ratio >= 0.7:
        return "light"
    if ratio >= 0.5:
        return "moderate"
    if ratio >= 0.3:
        return "heavy"
    return "severe"


def congestion_percentage(current: float | None, free_flow: float | None) -> int:
    if not _usable_speeds(current, free_flow):
        return 0
    ratio = 1 - float(current) / float(free_flow)
    return round(max(0.0, min(100.0, ratio * 100)))


def delay_minutes(current: float | None, free_flow: float | None, original_duration_min: float | None) -> int:
    """Extra minutes the route takes at the current speed versus free flow."""
    if not _usable_speeds(current, free_flow) or not original_duration_min:
        return 0
    original = float(original_duration_min)
    delayed = original * (float(free_flow) / float(current))
    return round(delayed - original)


def route_original_eta(route: Any) -> datetime | None:
    return route.end_time or route.scheduled_date


def revised_eta(original_eta: datetime | None, traffic: TrafficSummary | None) -> RevisedEta:
    if traffic is None or not traffic.delay_minutes:
        return RevisedEta(original_eta=original_eta, current_eta=original_eta, delay_minutes=0)

    current_eta = original_eta + timedelta(minutes=traffic.delay_minutes) if original_eta else None
    return RevisedEta(
        original_eta=original_eta,
        current_eta=current_eta,
        delay_minutes=traffic.delay_minutes,
    )


def with_route_delay(traffic: TrafficSummary, original_duration_min: float | None) -> TrafficSummary:
    """Fill the derived congestion percentage and delay for one route."""
    return traffic.model_copy(
        update={
            "congestion_percentage": congestion_percentage(traffic.avg_current_speed, traffic.avg_free_flow_speed),
            "delay_minutes": delay_minutes(
                traffic.avg_current_speed,
                traffic.avg_free_flow_speed,
                original_duration_min,
            ),
        }
    )
