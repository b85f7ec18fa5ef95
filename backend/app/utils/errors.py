from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.models import ErrorLog


@dataclass
class AppError(Exception):
    message: str
    error_code: str = "APP_ERROR"
    status_code: int = 400
    details: Any = None
    stage: str = "API"
    route_id: int | None = None

    def __str__(self) -> str:
        return self.message


class NoCoordinates(Exception):
    """Route has neither stored geometry nor located stops."""

    def __init__(self, route_id: int) -> None:
        super().__init__(f"Route {route_id} has no coordinates")
        self.route_id = route_id


class OptimizerParseFailure(Exception):
    """AI planner reply did not match the expected sequencing contract."""


class PersistenceFailure(Exception):
    """A condition snapshot or route mutation was not durably recorded."""

    def __init__(self, message: str, *, route_id: int | None = None) -> None:
        super().__init__(message)
        self.route_id = route_id


def log_error(
    db: Session,
    stage: str,
    message: str,
    route_id: int | None = None,
    details: Any = None,
) -> None:
    payload = {
        "message": message,
        "details": details,
        "timestamp": datetime.utcnow().isoformat(),
    }
    db.add(
        ErrorLog(
            route_id=route_id,
            stage=stage,
            payload_json=json.dumps(payload, default=str),
        )
    )
    db.commit()
