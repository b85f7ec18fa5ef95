from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import ConditionSnapshot
from app.schemas.conditions import (
    OptimizationResult,
    RecalculationVerdict,
    RevisedEta,
    SnapshotOut,
    TrafficSummary,
    WeatherReport,
)
from app.utils.db import SessionLocal
from app.utils.errors import PersistenceFailure
from app.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)


def _dump(model) -> str | None:  # noqa: ANN001
    if model is None:
        return None
    return model.model_dump_json()


def snapshot_to_schema(row: ConditionSnapshot) -> SnapshotOut:
    return SnapshotOut(
        id=row.id,
        route_id=row.route_id,
        captured_at=row.captured_at,
        traffic=TrafficSummary.model_validate_json(row.traffic_json) if row.traffic_json else None,
        weather=WeatherReport.model_validate_json(row.weather_json) if row.weather_json else None,
        verdict=RecalculationVerdict(
            suggested=bool(row.recalculation_suggested),
            reasons=json.loads(row.recalculation_reasons_json or "[]"),
        ),
        eta=RevisedEta(
            original_eta=row.original_eta,
            current_eta=row.current_eta,
            delay_minutes=int(row.delay_minutes or 0),
        ),
        notification_sent=bool(row.notification_sent),
        notification_sent_at=row.notification_sent_at,
        optimization=(
            OptimizationResult.model_validate_json(row.optimization_json) if row.optimization_json else None
        ),
        source=row.source,
    )


class SnapshotLedger:
    """Append-only store of per-route condition snapshots.

    Rows are immutable after ``append`` except for the notification flag and
    the attached optimization evidence. Every database failure is re-raised as
    ``PersistenceFailure``.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.session_factory = session_factory

    def _run(self, action: str, route_id: int | None, fn: Callable[[Session], object]):  # noqa: ANN202
        db = self.session_factory()
        try:
            return fn(db)
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceFailure(f"Snapshot {action} failed: {exc}", route_id=route_id) from exc
        finally:
            db.close()

    def append(
        self,
        route_id: int,
        *,
        traffic: TrafficSummary | None,
        weather: WeatherReport | None,
        verdict: RecalculationVerdict,
        eta: RevisedEta,
        captured_at: datetime | None = None,
        source: str = "system",
    ) -> SnapshotOut:
        def _write(db: Session) -> SnapshotOut:
            row = ConditionSnapshot(
                route_id=route_id,
                captured_at=captured_at or datetime.utcnow(),
                traffic_json=_dump(traffic),
                weather_json=_dump(weather),
                recalculation_suggested=verdict.suggested,
                recalculation_reasons_json=json.dumps(verdict.reasons),
                original_eta=eta.original_eta,
                current_eta=eta.current_eta,
                delay_minutes=eta.delay_minutes,
                source=source,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return snapshot_to_schema(row)

        return self._run("append", route_id, _write)

    def latest(self, route_id: int) -> SnapshotOut | None:
        def _read(db: Session) -> SnapshotOut | None:
            row = db.execute(
                select(ConditionSnapshot)
                .where(ConditionSnapshot.route_id == route_id)
                .order_by(ConditionSnapshot.captured_at.desc(), ConditionSnapshot.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return snapshot_to_schema(row) if row is not None else None

        return self._run("read", route_id, _read)

    def range(self, route_id: int, start: datetime, end: datetime) -> list[SnapshotOut]:
        """Snapshots captured in ``[start, end]``, oldest first."""

        def _read(db: Session) -> list[SnapshotOut]:
            rows = db.execute(
                select(ConditionSnapshot)
                .where(
                    ConditionSnapshot.route_id == route_id,
                    ConditionSnapshot.captured_at >= start,
                    ConditionSnapshot.captured_at <= end,
                )
                .order_by(ConditionSnapshot.captured_at.asc(), ConditionSnapshot.id.asc())
            ).scalars()
            return [snapshot_to_schema(row) for row in rows]

        return self._run("read", route_id, _read)

    def history(self, route_id: int, hours: int = 24) -> list[SnapshotOut]:
        now = datetime.utcnow()
        return self.range(route_id, now - timedelta(hours=hours), now)

    def purge_expired(self, retention_hours: int | None = None, *, now: datetime | None = None) -> int:
        hours = retention_hours if retention_hours is not None else get_settings().snapshot_retention_hours
        cutoff = (now or datetime.utcnow()) - timedelta(hours=hours)

        def _purge(db: Session) -> int:
            result = db.execute(delete(ConditionSnapshot).where(ConditionSnapshot.captured_at < cutoff))
            db.commit()
            return int(result.rowcount or 0)

        removed = self._run("purge", None, _purge)
        if removed:
            LOGGER.info("Purged %s condition snapshots older than %s", removed, cutoff.isoformat())
        return removed

    def mark_notified(self, snapshot_id: int, *, sent_at: datetime | None = None) -> None:
        def _write(db: Session) -> None:
            row = db.get(ConditionSnapshot, snapshot_id)
            if row is None:
                return
            row.notification_sent = True
            row.notification_sent_at = sent_at or datetime.utcnow()
            db.commit()

        self._run("notify", None, _write)

    def attach_optimization(self, snapshot_id: int, result: OptimizationResult) -> None:
        def _write(db: Session) -> None:
            row = db.get(ConditionSnapshot, snapshot_id)
            if row is None:
                return
            row.optimization_json = result.model_dump_json()
            db.commit()

        self._run("attach", None, _write)
