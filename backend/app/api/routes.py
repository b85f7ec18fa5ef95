from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.schemas.api import ConditionHistoryResponse, RouteDetailsResponse
from app.schemas.conditions import SnapshotOut
from app.services.monitoring import ReoptimizationOutcome, UnitResult, get_fleet_monitor
from app.services.route_status import complete_route, get_route_or_404, start_route
from app.utils.db import get_db
from app.utils.errors import AppError

router = APIRouter(prefix="/api/v1/routes", tags=["routes"])


@router.get("/{route_id}", response_model=RouteDetailsResponse)
def get_route(route_id: int, db: Session = Depends(get_db)) -> RouteDetailsResponse:
    return RouteDetailsResponse.from_entity(get_route_or_404(db, route_id))


@router.post("/{route_id}/start", response_model=RouteDetailsResponse)
def start(route_id: int, db: Session = Depends(get_db)) -> RouteDetailsResponse:
    return RouteDetailsResponse.from_entity(start_route(db, route_id))


@router.post("/{route_id}/complete", response_model=RouteDetailsResponse)
def complete(route_id: int, db: Session = Depends(get_db)) -> RouteDetailsResponse:
    return RouteDetailsResponse.from_entity(complete_route(db, route_id))


@router.post("/{route_id}/refresh", response_model=UnitResult)
async def refresh_conditions(route_id: int) -> UnitResult:
    return await get_fleet_monitor().update_route(route_id)


@router.post("/{route_id}/reoptimize", response_model=ReoptimizationOutcome)
async def reoptimize(route_id: int, apply: bool = Query(default=True)) -> ReoptimizationOutcome:
    return await get_fleet_monitor().reoptimize_route(route_id, apply=apply)


@router.get("/{route_id}/conditions/latest", response_model=SnapshotOut)
async def latest_conditions(route_id: int) -> SnapshotOut:
    snapshot = await get_fleet_monitor().latest_snapshot(route_id)
    if snapshot is None:
        raise AppError(
            message=f"No condition snapshots for route {route_id}",
            error_code="NOT_FOUND",
            status_code=404,
            stage="MONITOR",
            route_id=route_id,
        )
    return snapshot


@router.get("/{route_id}/conditions", response_model=ConditionHistoryResponse)
async def condition_history(route_id: int, hours: int = Query(default=24, ge=1, le=168)) -> dict[str, Any]:
    items = await get_fleet_monitor().snapshot_history(route_id, hours)
    return {"route_id": route_id, "hours": hours, "items": items}
