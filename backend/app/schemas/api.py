from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from app.models import Route, Stop
from app.schemas.conditions import SnapshotOut


class StopOut(BaseModel):
    id: int
    sequence_idx: int | None
    address: str | None
    lat: float
    lon: float
    tw_earliest: datetime | None
    tw_latest: datetime | None
    priority: str
    service_time_min: int
    package_type: str
    status: str
    delivered_at: datetime | None = None

    @classmethod
    def from_entity(cls, stop: Stop) -> "StopOut":
        return cls(
            id=stop.id,
            sequence_idx=stop.sequence_idx,
            address=stop.address,
            lat=stop.lat,
            lon=stop.lon,
            tw_earliest=stop.tw_earliest,
            tw_latest=stop.tw_latest,
            priority=stop.priority,
            service_time_min=stop.service_time_min,
            package_type=stop.package_type,
            status=stop.status,
            delivered_at=stop.delivered_at,
        )


class RouteMetricsOut(BaseModel):
    total_distance_km: float
    total_duration_min: float
    total_stops: int
    estimated_fuel_l: float


class RouteDetailsResponse(BaseModel):
    id: int
    name: str
    status: str
    scheduled_date: datetime
    start_time: datetime | None
    end_time: datetime | None
    actual_start_time: datetime | None
    actual_end_time: datetime | None
    start_location: list[float] | None
    end_location: list[float] | None
    geometry: list[list[float]] | None
    metrics: RouteMetricsOut
    vehicle: dict[str, Any]
    driver: dict[str, Any]
    optimization_priority: str
    ai_model: str | None
    ai_confidence: float | None
    ai_reasoning: str | None
    stops: list[StopOut]

    @classmethod
    def from_entity(cls, route: Route) -> "RouteDetailsResponse":
        start = [route.start_lon, route.start_lat] if route.start_lon is not None and route.start_lat is not None else None
        end = [route.end_lon, route.end_lat] if route.end_lon is not None and route.end_lat is not None else None
        return cls(
            id=route.id,
            name=route.name,
            status=route.status,
            scheduled_date=route.scheduled_date,
            start_time=route.start_time,
            end_time=route.end_time,
            actual_start_time=route.actual_start_time,
            actual_end_time=route.actual_end_time,
            start_location=start,
            end_location=end,
            geometry=json.loads(route.geometry_json) if route.geometry_json else None,
            metrics=RouteMetricsOut(
                total_distance_km=route.total_distance_km,
                total_duration_min=route.total_duration_min,
                total_stops=route.total_stops,
                estimated_fuel_l=route.estimated_fuel_l,
            ),
            vehicle={"id": route.vehicle_id, "type": route.vehicle_type},
            driver={"name": route.driver_name, "phone": route.driver_phone},
            optimization_priority=route.optimization_priority,
            ai_model=route.ai_model,
            ai_confidence=route.ai_confidence,
            ai_reasoning=route.ai_reasoning,
            stops=[StopOut.from_entity(stop) for stop in route.stops],
        )


class ConditionHistoryResponse(BaseModel):
    route_id: int
    hours: int
    items: list[SnapshotOut]
