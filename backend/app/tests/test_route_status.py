import pytest

from app.models import Route
from app.services.route_status import can_transition, complete_route, mark_delayed, start_route, transition_route
from app.utils.db import SessionLocal
from app.utils.errors import AppError


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        ("draft", "planned", True),
        ("planned", "in_progress", True),
        ("in_progress", "completed", True),
        ("in_progress", "delayed", True),
        ("delayed", "in_progress", True),
        ("delayed", "completed", True),
        ("planned", "completed", False),
        ("in_progress", "planned", False),
        ("completed", "delayed", False),
        ("cancelled", "in_progress", False),
        ("completed", "cancelled", False),
    ],
)
def test_status_transitions(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_start_route_moves_stops_in_transit(make_route):
    route_id = make_route(status="planned")
    db = SessionLocal()
    try:
        route = start_route(db, route_id)
        assert route.status == "in_progress"
        assert route.actual_start_time is not None
        assert {stop.status for stop in route.stops} == {"in_transit"}
    finally:
        db.close()


def test_complete_route_delivers_open_stops(make_route):
    route_id = make_route(status="delayed")
    db = SessionLocal()
    try:
        route = complete_route(db, route_id)
        assert route.status == "completed"
        assert route.actual_end_time is not None
        assert {stop.status for stop in route.stops} == {"delivered"}
        assert all(stop.delivered_at is not None for stop in route.stops)
    finally:
        db.close()


def test_invalid_transition_raises_conflict(make_route):
    route_id = make_route(status="completed")
    db = SessionLocal()
    try:
        with pytest.raises(AppError) as exc:
            start_route(db, route_id)
        assert exc.value.status_code == 409
        assert exc.value.error_code == "INVALID_STATUS_TRANSITION"
    finally:
        db.close()


def test_mark_delayed_is_sticky(make_route):
    route_id = make_route(status="in_progress")
    db = SessionLocal()
    try:
        assert mark_delayed(db, route_id) is True
        assert mark_delayed(db, route_id) is False
        assert db.get(Route, route_id).status == "delayed"
    finally:
        db.close()


def test_mark_delayed_ignores_terminal_routes(make_route):
    route_id = make_route(status="completed")
    db = SessionLocal()
    try:
        assert mark_delayed(db, route_id) is False
        with pytest.raises(AppError):
            transition_route(db, db.get(Route, route_id), "delayed")
    finally:
        db.close()
