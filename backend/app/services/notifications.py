from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    route_id: int
    reason: str
    delay_minutes: int = 0
    snapshot_id: int | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)


class NotificationSink(Protocol):
    async def send(self, event: NotificationEvent) -> None: ...


class LoggingNotificationSink:
    """Default sink: route alerts go to the application log."""

    async def send(self, event: NotificationEvent) -> None:
        LOGGER.info(
            "Route alert (route_id=%s, delay_min=%s, snapshot_id=%s): %s",
            event.route_id,
            event.delay_minutes,
            event.snapshot_id,
            event.reason,
        )

