"""Fleet scan orchestrator.

A cycle moves through ``ScanState`` idle -> scanning -> per_route_fan_out ->
aggregating -> idle. Each active route is one asyncio unit; traffic and weather
are fetched concurrently inside a unit, provider failures only blank their
slot, and database work is pushed to a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from app.models import Route, Stop
from app.providers.errors import ProviderError
from app.providers.open_meteo import OpenMeteoWeatherProvider, get_weather_provider
from app.providers.tomtom import TomTomTrafficProvider, get_traffic_provider
from app.schemas.conditions import (
    BoundingBox,
    OptimizationResult,
    Point,
    SequencingRequest,
    SnapshotOut,
    StopInput,
    TrafficSummary,
    WeatherReport,
)
from app.services.geospatial import bounding_box, midpoint
from app.services.ledger import SnapshotLedger
from app.services.notifications import LoggingNotificationSink, NotificationEvent, NotificationSink
from app.services.recalculation import decide
from app.services.route_status import MONITORED_STATUSES, get_route_or_404, mark_delayed
from app.services.sequencing import RouteOptimizer, get_route_optimizer
from app.services.traffic_delay import revised_eta, route_original_eta, with_route_delay
from app.utils.db import session_scope
from app.utils.errors import AppError, NoCoordinates, PersistenceFailure, log_error
from app.utils.settings import Settings, get_settings


LOGGER = logging.getLogger(__name__)

DELAYED_THRESHOLD_MINUTES = 30
NOTIFY_THRESHOLD_MINUTES = 15
REOPTIMIZE_DELAY_MINUTES = 15
REOPTIMIZE_WEATHER = {"storm", "hail"}


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PER_ROUTE_FAN_OUT = "per_route_fan_out"
    AGGREGATING = "aggregating"


@dataclass
class RouteContext:
    """Detached view of a route, safe to use outside its session."""

    id: int
    status: str
    points: list[Point]
    total_duration_min: float | None = None
    original_eta: datetime | None = None


@dataclass
class ReoptimizationInput:
    route_id: int
    remaining: list[StopInput]
    position: Point
    end: Point | None
    vehicle_type: str
    priority: str
    previous_duration_min: float | None
    delivered_ids: list[int] = field(default_factory=list)


class UnitResult(BaseModel):
    route_id: int
    outcome: Literal["succeeded", "failed", "skipped"]
    snapshot: SnapshotOut | None = None
    marked_delayed: bool = False
    notified: bool = False
    error: str | None = None


class ScanSummary(BaseModel):
    started_at: datetime
    finished_at: datetime | None = None
    routes: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_routes: int = 0
    purged: int = 0
    # True when another cycle was already running and this call did nothing.
    skipped: bool = False
    results: list[UnitResult] = []


class ReoptimizationOutcome(BaseModel):
    needed: bool
    reason: str
    result: OptimizationResult | None = None
    time_saved_min: float | None = None
    applied: bool = False


def route_points(route: Route) -> list[Point]:
    """Stored geometry, or the ordered stop locations when there is none."""
    if route.geometry_json:
        try:
            raw = json.loads(route.geometry_json)
        except ValueError:
            raw = []
        points = [(float(item[0]), float(item[1])) for item in raw if isinstance(item, (list, tuple)) and len(item) >= 2]
        if points:
            return points
    return [(float(stop.lon), float(stop.lat)) for stop in _ordered_stops(route) if stop.lon is not None and stop.lat is not None]


def _ordered_stops(route: Route) -> list[Stop]:
    return sorted(route.stops, key=lambda stop: (stop.sequence_idx is None, stop.sequence_idx or 0, stop.id))


def route_context(route: Route) -> RouteContext:
    return RouteContext(
        id=route.id,
        status=route.status,
        points=route_points(route),
        total_duration_min=route.total_duration_min,
        original_eta=route_original_eta(route),
    )


def stop_input(stop: Stop) -> StopInput:
    return StopInput(
        lon=stop.lon,
        lat=stop.lat,
        earliest=stop.tw_earliest,
        latest=stop.tw_latest,
        priority=stop.priority,
        service_time_min=stop.service_time_min,
        package_type=stop.package_type,
        stop_id=stop.id,
        address=stop.address,
    )


def should_reoptimize(snapshot: SnapshotOut | None) -> bool:
    if snapshot is None:
        return False
    traffic = snapshot.traffic
    weather = snapshot.weather
    if traffic is not None and traffic.delay_minutes > REOPTIMIZE_DELAY_MINUTES:
        return True
    if weather is not None and weather.current is not None and weather.current.condition in REOPTIMIZE_WEATHER:
        return True
    if traffic is not None and any(incident.severity == "severe" for incident in traffic.incidents):
        return True
    return False


def _invalid_route_data(route_id: int, exc: ValidationError) -> AppError:
    return AppError(
        message=f"Route {route_id} has values the optimizer cannot use",
        error_code="INVALID_ROUTE_DATA",
        status_code=422,
        stage="MONITOR",
        route_id=route_id,
        details={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]},
    )


def _record_failure(stage: str, message: str, route_id: int | None, details: object = None) -> None:
    try:
        with session_scope() as db:
            log_error(db, stage, message, route_id=route_id, details=details)
    except SQLAlchemyError as exc:
        LOGGER.warning("Could not write error log for route %s: %s", route_id, exc)


class FleetMonitor:
    def __init__(
        self,
        *,
        traffic: TomTomTrafficProvider | None = None,
        weather: OpenMeteoWeatherProvider | None = None,
        optimizer: RouteOptimizer | None = None,
        ledger: SnapshotLedger | None = None,
        sink: NotificationSink | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.traffic = traffic or get_traffic_provider()
        self.weather = weather or get_weather_provider()
        self.optimizer = optimizer or get_route_optimizer()
        self.ledger = ledger or SnapshotLedger()
        self.sink = sink or LoggingNotificationSink()
        self.state = ScanState.IDLE
        self.last_summary: ScanSummary | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    # -- database helpers (run in worker threads) --

    def _load_active_routes(self, now: datetime) -> list[RouteContext]:
        day_start = datetime.combine(now.date(), time.min)
        day_end = day_start + timedelta(days=1)
        try:
            with session_scope() as db:
                routes = db.execute(
                    select(Route)
                    .where(
                        Route.status.in_(MONITORED_STATUSES),
                        Route.scheduled_date >= day_start,
                        Route.scheduled_date < day_end,
                    )
                    .options(selectinload(Route.stops))
                    .order_by(Route.id)
                ).scalars().all()
                return [route_context(route) for route in routes]
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Loading active routes failed: {exc}") from exc

    def _load_route(self, route_id: int) -> RouteContext:
        with session_scope() as db:
            return route_context(get_route_or_404(db, route_id))

    def _mark_delayed(self, route_id: int) -> bool:
        try:
            with session_scope() as db:
                return mark_delayed(db, route_id)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Marking route delayed failed: {exc}", route_id=route_id) from exc

    def _load_reoptimization_input(self, route_id: int) -> ReoptimizationInput:
        with session_scope() as db:
            route = get_route_or_404(db, route_id)
            ordered = _ordered_stops(route)
            delivered = [stop for stop in ordered if stop.status == "delivered"]
            remaining = [stop for stop in ordered if stop.status != "delivered"]

            position: Point | None = None
            if delivered:
                last = max(delivered, key=lambda stop: (stop.delivered_at or datetime.min, stop.sequence_idx or 0))
                position = (last.lon, last.lat)
            elif route.start_lon is not None and route.start_lat is not None:
                position = (route.start_lon, route.start_lat)
            elif remaining:
                position = (remaining[0].lon, remaining[0].lat)

            end = None
            if route.end_lon is not None and route.end_lat is not None:
                end = (route.end_lon, route.end_lat)

            try:
                remaining_inputs = [stop_input(stop) for stop in remaining]
            except ValidationError as exc:
                raise _invalid_route_data(route.id, exc) from exc

            return ReoptimizationInput(
                route_id=route.id,
                remaining=remaining_inputs,
                position=position or (0.0, 0.0),
                end=end,
                vehicle_type=route.vehicle_type,
                priority=route.optimization_priority,
                previous_duration_min=route.total_duration_min or None,
                delivered_ids=[stop.id for stop in delivered],
            )

    def _apply_result(self, plan: ReoptimizationInput, result: OptimizationResult) -> None:
        try:
            with session_scope() as db:
                route = get_route_or_404(db, plan.route_id)
                by_id = {stop.id: stop for stop in route.stops}
                new_order = [by_id[stop_id] for stop_id in plan.delivered_ids if stop_id in by_id]
                new_order += [by_id[item.stop_id] for item in result.stops if item.stop_id in by_id]
                for idx, stop in enumerate(new_order):
                    stop.sequence_idx = idx

                geometry: list[list[float]] = []
                if route.start_lon is not None and route.start_lat is not None:
                    geometry.append([route.start_lon, route.start_lat])
                geometry += [[stop.lon, stop.lat] for stop in new_order]
                if plan.end is not None:
                    geometry.append(list(plan.end))
                route.geometry_json = json.dumps(geometry)

                metrics = result.metrics
                if metrics.total_distance_km is not None:
                    route.total_distance_km = metrics.total_distance_km
                if metrics.total_duration_min is not None:
                    route.total_duration_min = metrics.total_duration_min
                if metrics.fuel_estimate_l is not None:
                    route.estimated_fuel_l = metrics.fuel_estimate_l
                route.total_stops = len(route.stops)
                route.ai_model = result.method
                route.ai_confidence = result.confidence
                route.ai_reasoning = result.reasoning
                route.updated_at = datetime.utcnow()
                db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Applying optimized sequence failed: {exc}", route_id=plan.route_id) from exc

    # -- condition fetches --

    async def _fetch_traffic(self, ctx: RouteContext, box: BoundingBox) -> TrafficSummary | None:
        try:
            traffic = await self.traffic.fetch_traffic(ctx.points, box)
        except ProviderError as exc:
            LOGGER.warning("Traffic unavailable for route %s (code=%s): %s", ctx.id, exc.code, exc)
            return None
        return with_route_delay(traffic, ctx.total_duration_min)

    async def _fetch_weather(self, ctx: RouteContext) -> WeatherReport | None:
        point = midpoint(ctx.points)
        if point is None:
            return None
        try:
            return await self.weather.fetch_weather(point)
        except ProviderError as exc:
            LOGGER.warning("Weather unavailable for route %s (code=%s): %s", ctx.id, exc.code, exc)
            return None

    # -- per-route unit --

    async def _run_unit(self, ctx: RouteContext, *, source: str = "system") -> UnitResult:
        if not ctx.points:
            raise NoCoordinates(ctx.id)

        box = bounding_box(ctx.points)
        traffic, weather = await asyncio.gather(self._fetch_traffic(ctx, box), self._fetch_weather(ctx))

        eta = revised_eta(ctx.original_eta, traffic)
        verdict = decide(traffic, weather, eta)
        snapshot = await asyncio.to_thread(
            self.ledger.append,
            ctx.id,
            traffic=traffic,
            weather=weather,
            verdict=verdict,
            eta=eta,
            source=source,
        )

        marked = False
        if eta.delay_minutes > DELAYED_THRESHOLD_MINUTES and ctx.status != "delayed":
            marked = await asyncio.to_thread(self._mark_delayed, ctx.id)

        notified = False
        if verdict.suggested or eta.delay_minutes > NOTIFY_THRESHOLD_MINUTES:
            notified = await self._notify(ctx.id, snapshot, verdict.reason or f"Delay of {eta.delay_minutes} minutes")

        if self.settings.monitor_auto_reoptimize and verdict.suggested:
            try:
                await self.reoptimize_route(ctx.id, apply=True)
            except Exception as exc:  # noqa: BLE001
                # The snapshot is already recorded; a failed re-sequence does not fail the unit.
                LOGGER.warning("Automatic re-optimization failed for route %s: %s", ctx.id, exc)

        return UnitResult(
            route_id=ctx.id,
            outcome="succeeded",
            snapshot=snapshot,
            marked_delayed=marked,
            notified=notified,
        )

    async def _notify(self, route_id: int, snapshot: SnapshotOut, reason: str) -> bool:
        event = NotificationEvent(
            route_id=route_id,
            reason=reason,
            delay_minutes=snapshot.eta.delay_minutes,
            snapshot_id=snapshot.id,
        )
        try:
            await self.sink.send(event)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Notification for route %s not delivered: %s", route_id, exc)
            return False
        await asyncio.to_thread(self.ledger.mark_notified, snapshot.id)
        return True

    async def _bounded_unit(self, semaphore: asyncio.Semaphore, ctx: RouteContext) -> UnitResult:
        async with semaphore:
            return await self._run_unit(ctx)

    # -- cycle --

    async def scan_all_routes(self) -> ScanSummary:
        started = datetime.utcnow()
        if not self._lock.acquire(blocking=False):
            LOGGER.info("Route scan already in progress; skipping this trigger")
            return ScanSummary(started_at=started, finished_at=started, skipped=True)
        try:
            summary = await self._scan(started)
        finally:
            self.state = ScanState.IDLE
            self._lock.release()
        self.last_summary = summary
        return summary

    async def _scan(self, started: datetime) -> ScanSummary:
        self.state = ScanState.SCANNING
        contexts = await asyncio.to_thread(self._load_active_routes, started)

        self.state = ScanState.PER_ROUTE_FAN_OUT
        semaphore = asyncio.Semaphore(self.settings.monitor_max_concurrency)
        outcomes = await asyncio.gather(
            *(self._bounded_unit(semaphore, ctx) for ctx in contexts),
            return_exceptions=True,
        )

        self.state = ScanState.AGGREGATING
        summary = ScanSummary(started_at=started, routes=len(contexts))
        for ctx, outcome in zip(contexts, outcomes):
            summary.results.append(await self._settle(ctx, outcome))
        summary.succeeded = sum(1 for item in summary.results if item.outcome == "succeeded")
        summary.failed = sum(1 for item in summary.results if item.outcome == "failed")
        summary.skipped_routes = sum(1 for item in summary.results if item.outcome == "skipped")

        try:
            summary.purged = await asyncio.to_thread(self.ledger.purge_expired, self.settings.snapshot_retention_hours)
        except PersistenceFailure as exc:
            LOGGER.error("Snapshot retention purge failed: %s", exc)

        summary.finished_at = datetime.utcnow()
        LOGGER.info(
            "Route scan finished (routes=%s, succeeded=%s, failed=%s, skipped=%s, purged=%s)",
            summary.routes,
            summary.succeeded,
            summary.failed,
            summary.skipped_routes,
            summary.purged,
        )
        return summary

    async def _settle(self, ctx: RouteContext, outcome: UnitResult | BaseException) -> UnitResult:
        if isinstance(outcome, UnitResult):
            return outcome
        if isinstance(outcome, NoCoordinates):
            LOGGER.warning("Skipping route %s: no coordinates", ctx.id)
            return UnitResult(route_id=ctx.id, outcome="skipped", error=str(outcome))
        if isinstance(outcome, PersistenceFailure):
            LOGGER.error("Snapshot not recorded for route %s: %s", ctx.id, outcome)
            await asyncio.to_thread(_record_failure, "MONITOR", str(outcome), ctx.id)
            return UnitResult(route_id=ctx.id, outcome="failed", error=str(outcome))
        LOGGER.warning("Route %s monitoring unit failed (%s): %s", ctx.id, outcome.__class__.__name__, outcome)
        return UnitResult(route_id=ctx.id, outcome="failed", error=str(outcome))

    # -- on-demand operations --

    async def update_route(self, route_id: int) -> UnitResult:
        """Run one monitoring unit for a single route outside the cycle."""
        ctx = await asyncio.to_thread(self._load_route, route_id)
        try:
            return await self._run_unit(ctx, source="manual")
        except NoCoordinates as exc:
            raise AppError(
                message=str(exc),
                error_code="NO_COORDINATES",
                status_code=422,
                stage="MONITOR",
                route_id=route_id,
            ) from exc

    async def reoptimize_route(self, route_id: int, *, apply: bool = True) -> ReoptimizationOutcome:
        plan = await asyncio.to_thread(self._load_reoptimization_input, route_id)
        latest = await asyncio.to_thread(self.ledger.latest, route_id)

        if not plan.remaining:
            return ReoptimizationOutcome(needed=False, reason="All deliveries completed")
        if not should_reoptimize(latest):
            return ReoptimizationOutcome(needed=False, reason="Current route still optimal")

        try:
            request = SequencingRequest(
                stops=plan.remaining,
                start=plan.position,
                end=plan.end,
                vehicle_type=plan.vehicle_type,
                priority=plan.priority,
                traffic=latest.traffic,
                weather=latest.weather,
            )
        except ValidationError as exc:
            raise _invalid_route_data(route_id, exc) from exc
        result = await self.optimizer.optimize(request)

        time_saved = None
        new_duration = result.metrics.total_duration_min
        if plan.previous_duration_min is not None and new_duration is not None:
            time_saved = round(plan.previous_duration_min - new_duration, 1)

        if apply:
            await asyncio.to_thread(self._apply_result, plan, result)
            await asyncio.to_thread(self.ledger.attach_optimization, latest.id, result)
            LOGGER.info(
                "Route %s re-sequenced (method=%s, stops=%s, time_saved_min=%s)",
                route_id,
                result.method,
                len(result.sequence),
                time_saved,
            )

        return ReoptimizationOutcome(
            needed=True,
            reason="Conditions changed significantly",
            result=result,
            time_saved_min=time_saved,
            applied=apply,
        )

    async def latest_snapshot(self, route_id: int) -> SnapshotOut | None:
        return await asyncio.to_thread(self.ledger.latest, route_id)

    async def snapshot_history(self, route_id: int, hours: int = 24) -> list[SnapshotOut]:
        return await asyncio.to_thread(self.ledger.history, route_id, hours)

    def status(self) -> dict[str, object]:
        return {
            "enabled": self.settings.feature_route_monitor,
            "state": self.state.value,
            "running": self.running,
            "interval_seconds": self.settings.monitor_interval_seconds,
            "max_concurrency": self.settings.monitor_max_concurrency,
            "last_summary": self.last_summary.model_dump(mode="json", exclude={"results"}) if self.last_summary else None,
        }


_MONITOR: FleetMonitor | None = None


def get_fleet_monitor() -> FleetMonitor:
    global _MONITOR
    if _MONITOR is None:
        _MONITOR = FleetMonitor()
    return _MONITOR


def reset_fleet_monitor() -> None:
    global _MONITOR
    _MONITOR = None
