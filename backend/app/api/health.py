from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.services.cache import InMemoryCache, get_cache
from app.services.monitoring import get_fleet_monitor
from app.utils.db import engine
from app.utils.settings import get_settings

router = APIRouter(tags=["health"])


def _check_database_ready() -> dict[str, Any]:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"status": "ready"}
    except Exception as exc:  # noqa: BLE001
        return {"status": "unready", "detail": str(exc)}


def _check_cache_ready() -> dict[str, Any]:
    if isinstance(get_cache(), InMemoryCache):
        return {"status": "skipped", "detail": "redis unreachable; using in-process cache"}
    return {"status": "ready", "backend": "redis"}


def _check_traffic_ready() -> dict[str, Any]:
    settings = get_settings()
    if not settings.feature_route_monitor:
        return {"status": "skipped", "detail": "route monitor disabled"}
    if not settings.tomtom_api_key:
        return {"status": "unready", "detail": "TOMTOM_API_KEY is not configured"}
    return {"status": "ready"}


def _build_readiness_report() -> dict[str, Any]:
    checks = {
        "database": _check_database_ready(),
        "cache": _check_cache_ready(),
        "traffic": _check_traffic_ready(),
    }
    ready = all(check["status"] in {"ready", "skipped"} for check in checks.values())
    return {"status": "ok" if ready else "degraded", "ready": ready, "checks": checks}


@router.get("/api/v1/health")
def health() -> dict[str, Any]:
    settings = get_settings()
    monitor = get_fleet_monitor()
    return {
        "status": "ok",
        "env": settings.app_env,
        "monitor_state": monitor.state.value,
        "feature_route_monitor": bool(settings.feature_route_monitor),
        "feature_ai_planner": bool(settings.feature_ai_planner),
        "monitor_auto_reoptimize": bool(settings.monitor_auto_reoptimize),
    }


@router.get("/health/live")
def health_live() -> dict[str, Any]:
    settings = get_settings()
    return {"status": "ok", "env": settings.app_env}


@router.get("/health/ready")
def health_ready() -> JSONResponse:
    report = _build_readiness_report()
    status_code = 200 if report["ready"] else 503
    return JSONResponse(status_code=status_code, content=report)
