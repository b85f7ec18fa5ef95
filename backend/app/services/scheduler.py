from __future__ import annotations

import asyncio
import logging

from app.services.monitoring import get_fleet_monitor
from app.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop: asyncio.Event | None = None


async def run_monitor_cycle() -> None:
    """One scheduled scan; errors are logged so the next interval still fires."""
    try:
        await get_fleet_monitor().scan_all_routes()
    except Exception:  # noqa: BLE001
        LOGGER.exception("Scheduled route scan failed")


async def _scheduler_loop(interval_seconds: int, stop: asyncio.Event) -> None:
    while not stop.is_set():
        await run_monitor_cycle()
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


def start_scheduler() -> None:
    global _task, _stop
    settings = get_settings()
    if settings.app_env == "test" or not settings.feature_route_monitor:
        return
    if _task is not None and not _task.done():
        return
    _stop = asyncio.Event()
    _task = asyncio.get_running_loop().create_task(_scheduler_loop(settings.monitor_interval_seconds, _stop))
    LOGGER.info("Route monitor scheduled every %s seconds", settings.monitor_interval_seconds)


async def stop_scheduler() -> None:
    global _task, _stop
    if _stop is not None:
        _stop.set()
    if _task is not None:
        try:
            await asyncio.wait_for(_task, timeout=5)
        except asyncio.TimeoutError:
            _task.cancel()
    _task = None
    _stop = None
