from __future__ import annotations

import logging
import traceback
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import health, monitoring, routes
from app.models import Base
from app.services.scheduler import start_scheduler, stop_scheduler
from app.utils.db import SessionLocal, engine
from app.utils.errors import AppError, log_error
from app.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)
settings = get_settings()
app = FastAPI(title="Fleet Route Monitor API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup() -> None:
    Base.metadata.create_all(bind=engine)
    start_scheduler()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await stop_scheduler()


def _error_response(
    correlation_id: str,
    *,
    status_code: int,
    error_code: str,
    message: str,
    details: dict[str, Any] | None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers={"X-Correlation-ID": correlation_id},
        content={
            "error_code": error_code,
            "message": message,
            "details": details,
            "correlation_id": correlation_id,
        },
    )


@app.middleware("http")
async def structured_error_middleware(request: Request, call_next):
    correlation_id = str(uuid.uuid4())
    request.state.correlation_id = correlation_id

    try:
        response = await call_next(request)
    except AppError as exc:
        LOGGER.warning(
            "%s %s failed with %s (route_id=%s, correlation_id=%s)",
            request.method,
            request.url.path,
            exc.error_code,
            exc.route_id,
            correlation_id,
        )
        _safe_log_error(stage=exc.stage, message=exc.message, route_id=exc.route_id, details=exc.details)
        return _error_response(
            correlation_id,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            details=exc.details,
        )
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Unhandled error (correlation_id=%s)", correlation_id)
        _safe_log_error(stage="API", message=str(exc), details={"traceback": traceback.format_exc()})
        return _error_response(
            correlation_id,
            status_code=500,
            error_code="INTERNAL_ERROR",
            message="Unexpected server error",
            details={"type": type(exc).__name__},
        )

    response.headers["X-Correlation-ID"] = correlation_id
    return response


app.include_router(health.router)
app.include_router(monitoring.router)
app.include_router(routes.router)


def _safe_log_error(*, stage: str, message: str, route_id: int | None = None, details=None) -> None:
    db = SessionLocal()
    try:
        try:
            log_error(db, stage, message, route_id=route_id, details=details)
        except Exception:
            # The error_logs write must not replace the failure being reported.
            db.rollback()
    finally:
        db.close()
