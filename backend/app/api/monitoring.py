from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, status

from app.services.monitoring import ScanSummary, get_fleet_monitor
from app.utils.settings import get_settings

router = APIRouter(prefix="/api/v1/monitoring", tags=["monitoring"])


def _verify_scheduler_token(x_scheduler_token: str | None = Header(default=None)) -> None:
    settings = get_settings()
    if settings.app_env == "test":
        return
    if not settings.scheduler_token:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Scheduler token is not configured")
    if x_scheduler_token != settings.scheduler_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid scheduler token")


@router.post("/scan", response_model=ScanSummary)
async def scan_now(_: None = Depends(_verify_scheduler_token)) -> ScanSummary:
    return await get_fleet_monitor().scan_all_routes()


@router.get("/status")
def monitor_status() -> dict[str, Any]:
    return get_fleet_monitor().status()
