import asyncio

from app.services import scheduler


class _ExplodingMonitor:
    def __init__(self):
        self.calls = 0

    async def scan_all_routes(self):
        self.calls += 1
        raise RuntimeError("database went away")


def test_monitor_cycle_swallows_scan_errors(monkeypatch):
    monitor = _ExplodingMonitor()
    monkeypatch.setattr(scheduler, "get_fleet_monitor", lambda: monitor)

    asyncio.run(scheduler.run_monitor_cycle())

    assert monitor.calls == 1


def test_scheduler_loop_keeps_firing_after_failed_cycle(monkeypatch):
    monitor = _ExplodingMonitor()
    monkeypatch.setattr(scheduler, "get_fleet_monitor", lambda: monitor)

    async def scenario():
        stop = asyncio.Event()
        task = asyncio.create_task(scheduler._scheduler_loop(0.01, stop))
        while monitor.calls < 3:
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(scenario())

    assert monitor.calls >= 3


def test_start_scheduler_is_disabled_under_test_env():
    async def scenario():
        scheduler.start_scheduler()
        assert scheduler._task is None
        await scheduler.stop_scheduler()

    asyncio.run(scenario())
