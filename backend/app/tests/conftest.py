import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")
os.environ.setdefault("TOMTOM_API_KEY", "test-tomtom-key")
os.environ.setdefault("FEATURE_AI_PLANNER", "false")

from app.main import app
from app.models import Base
from app.services import cache, monitoring
from app.utils.db import engine


@pytest.fixture(autouse=True)
def reset_db():
    engine.dispose()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def reset_shared_state():
    cache.reset_cache()
    monitoring.reset_fleet_monitor()
    yield
    cache.reset_cache()
    monitoring.reset_fleet_monitor()


@pytest.fixture()
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def make_route():
    from datetime import datetime

    from app.models import Route, Stop
    from app.utils.db import SessionLocal

    def _make(
        *,
        status: str = "in_progress",
        stops: list[tuple[float, float, str]] | None = None,
        scheduled_date: datetime | None = None,
        total_duration_min: float = 60,
        end_time: datetime | None = None,
        start: tuple[float, float] | None = (-122.4194, 37.7749),
        geometry_json: str | None = None,
    ) -> int:
        if stops is None:
            stops = [
                (-122.41, 37.78, "urgent"),
                (-122.40, 37.79, "normal"),
                (-122.39, 37.80, "low"),
            ]
        db = SessionLocal()
        try:
            route = Route(
                name="Downtown loop",
                status=status,
                scheduled_date=scheduled_date or datetime.utcnow(),
                end_time=end_time,
                start_lon=start[0] if start else None,
                start_lat=start[1] if start else None,
                total_duration_min=total_duration_min,
                total_stops=len(stops),
                geometry_json=geometry_json,
            )
            db.add(route)
            db.flush()
            for idx, (lon, lat, priority) in enumerate(stops):
                db.add(Stop(route_id=route.id, sequence_idx=idx, lon=lon, lat=lat, priority=priority, address=f"Stop {idx}"))
            db.commit()
            return route.id
        finally:
            db.close()

    return _make
