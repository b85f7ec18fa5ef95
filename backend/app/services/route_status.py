from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.models import Route
from app.utils.errors import AppError


LOGGER = logging.getLogger(__name__)

TERMINAL_STATUSES = {"completed", "cancelled"}
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"planned", "in_progress", "cancelled", "delayed"},
    "planned": {"in_progress", "cancelled", "delayed"},
    "in_progress": {"completed", "cancelled", "delayed"},
    "delayed": {"in_progress", "completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}
MONITORED_STATUSES = ("planned", "in_progress")


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def get_route_or_404(db: Session, route_id: int) -> Route:
    route = db.execute(
        select(Route).where(Route.id == route_id).options(selectinload(Route.stops))
    ).scalar_one_or_none()
    if route is None:
        raise AppError(
            message=f"Route {route_id} not found",
            error_code="NOT_FOUND",
            status_code=404,
            stage="ROUTE",
            route_id=route_id,
        )
    return route


def transition_route(db: Session, route: Route, target: str) -> Route:
    if not can_transition(route.status, target):
        raise AppError(
            message=f"Route cannot move from {route.status} to {target}",
            error_code="INVALID_STATUS_TRANSITION",
            status_code=409,
            stage="ROUTE",
            route_id=route.id,
            details={"current": route.status, "target": target},
        )
    LOGGER.info("Route %s status %s -> %s", route.id, route.status, target)
    route.status = target
    route.updated_at = datetime.utcnow()
    return route


def start_route(db: Session, route_id: int) -> Route:
    route = get_route_or_404(db, route_id)
    transition_route(db, route, "in_progress")
    route.actual_start_time = route.actual_start_time or datetime.utcnow()
    for stop in route.stops:
        if stop.status in {"pending", "assigned"}:
            stop.status = "in_transit"
    db.commit()
    return route


def complete_route(db: Session, route_id: int) -> Route:
    route = get_route_or_404(db, route_id)
    transition_route(db, route, "completed")
    now = datetime.utcnow()
    route.actual_end_time = now
    for stop in route.stops:
        if stop.status not in {"delivered", "failed", "cancelled"}:
            stop.status = "delivered"
            stop.delivered_at = stop.delivered_at or now
    db.commit()
    return route


def mark_delayed(db: Session, route_id: int) -> bool:
    """Move a monitored route to delayed. Returns False when it already is."""
    route = db.get(Route, route_id)
    if route is None or route.status == "delayed":
        return False
    if not can_transition(route.status, "delayed"):
        return False
    transition_route(db, route, "delayed")
    db.commit()
    return True
