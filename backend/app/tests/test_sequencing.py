import asyncio

from app.providers.ai_planner import PlannerReply
from app.schemas.conditions import EstimatedMetrics, OptimizationResult, SequencingRequest, StopInput
from app.services.geospatial import distance
from app.services.sequencing import (
    FALLBACK_WARNING,
    AiSequencer,
    FallbackSequencer,
    RouteOptimizer,
    ai_confidence,
)
from app.utils.errors import OptimizerParseFailure


START = (0.0, 0.0)


def _mixed_request(**overrides) -> SequencingRequest:
    # Geography deliberately disagrees with priority: low-priority stops sit next to the start.
    stops = [
        StopInput(lon=0.01, lat=0.0, priority="low", stop_id=10),
        StopInput(lon=0.5, lat=0.5, priority="urgent", stop_id=11),
        StopInput(lon=0.02, lat=0.0, priority="normal", stop_id=12),
        StopInput(lon=0.9, lat=0.9, priority="high", stop_id=13),
        StopInput(lon=0.6, lat=0.5, priority="urgent", stop_id=14),
        StopInput(lon=0.04, lat=0.0, priority="low", stop_id=15),
    ]
    return SequencingRequest(stops=stops, start=START, **overrides)


class _FakePlanner:
    def __init__(self, reply=None, error=None, enabled=True):
        self.reply = reply
        self.error = error
        self.enabled = enabled
        self.calls = 0

    async def plan(self, request):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.reply


def test_fallback_orders_by_priority_bucket():
    request = _mixed_request()
    result = FallbackSequencer().sequence_sync(request)

    rank = {"urgent": 0, "high": 1, "normal": 2, "low": 3}
    ranks = [rank[request.stops[idx].priority] for idx in result.sequence]
    assert ranks == sorted(ranks)
    assert result.sequence == [1, 4, 3, 2, 0, 5]


def test_fallback_metrics_and_annotations():
    request = _mixed_request(end=START)
    result = FallbackSequencer().sequence_sync(request)

    points = [START] + [request.stops[idx].point for idx in result.sequence] + [START]
    expected_km = sum(distance(points[i], points[i + 1]) for i in range(len(points) - 1))
    assert result.metrics.total_distance_km == round(expected_km, 1)
    assert result.metrics.total_duration_min == round(expected_km / 40 * 60)
    assert result.metrics.fuel_estimate_l == round(expected_km * 0.1, 1)
    assert result.method == "fallback"
    assert result.confidence == 0.6
    assert result.warnings == [FALLBACK_WARNING]
    assert [stop.position for stop in result.stops] == [1, 2, 3, 4, 5, 6]
    assert [stop.original_index for stop in result.stops] == result.sequence
    assert [stop.stop_id for stop in result.stops] == [11, 14, 13, 12, 10, 15]


def test_fallback_is_idempotent():
    request = _mixed_request()
    first = FallbackSequencer().sequence_sync(request)
    second = FallbackSequencer().sequence_sync(request)
    assert first == second


def test_fallback_ties_go_to_lowest_index():
    stops = [
        StopInput(lon=1.0, lat=0.0),
        StopInput(lon=-1.0, lat=0.0),
        StopInput(lon=0.0, lat=1.0),
    ]
    result = FallbackSequencer().sequence_sync(SequencingRequest(stops=stops, start=START))
    assert result.sequence[0] == 0


def test_optimizer_uses_fallback_when_planner_disabled():
    planner = _FakePlanner(enabled=False)
    optimizer = RouteOptimizer(ai=AiSequencer(planner))
    result = asyncio.run(optimizer.optimize(_mixed_request()))

    assert planner.calls == 0
    assert result.method == "fallback"


def test_optimizer_falls_back_on_parse_failure():
    planner = _FakePlanner(error=OptimizerParseFailure("Failed to parse AI optimization response: invalid JSON"))
    optimizer = RouteOptimizer(ai=AiSequencer(planner))
    result = asyncio.run(optimizer.optimize(_mixed_request()))

    assert planner.calls == 1
    assert result.method == "fallback"
    assert result.warnings == [FALLBACK_WARNING, "Failed to parse AI optimization response: invalid JSON"]


def test_optimizer_returns_ai_result_with_confidence():
    reply = PlannerReply(
        sequence=[1, 4, 3, 2, 0, 5],
        reasoning="Urgent cluster first, then sweep back toward the depot.",
        metrics=EstimatedMetrics(total_distance_km=250.0, total_duration_min=380, fuel_estimate_l=25.0),
        model="gpt-4.1-nano",
    )
    optimizer = RouteOptimizer(ai=AiSequencer(_FakePlanner(reply=reply)))
    result = asyncio.run(optimizer.optimize(_mixed_request()))

    assert result.method == "gpt-4.1-nano"
    # No time windows: base 0.7 + reasoning + distance.
    assert result.confidence == 0.9
    assert result.stops[0].stop_id == 11


def test_ai_confidence_is_capped():
    from datetime import datetime, timedelta

    now = datetime(2024, 5, 1, 9, 0)
    request = SequencingRequest(
        stops=[StopInput(lon=0.1, lat=0.1, earliest=now, latest=now + timedelta(hours=2))],
        start=START,
    )
    reply = PlannerReply(
        sequence=[0],
        reasoning="Single stop, nothing to reorder here at all.",
        metrics=EstimatedMetrics(total_distance_km=3.0),
        model="m",
    )
    assert ai_confidence(request, reply) == 1.0


def test_optimizer_handles_empty_stop_list():
    result = asyncio.run(RouteOptimizer(ai=AiSequencer(_FakePlanner())).optimize(SequencingRequest(stops=[], start=START)))
    assert result.sequence == []


def test_optimizer_accepts_any_fallback_sequencer():
    class _ReverseSequencer:
        async def sequence(self, request):
            order = list(reversed(range(len(request.stops))))
            return OptimizationResult(sequence=order, stops=[], reasoning="reverse", method="reverse")

    optimizer = RouteOptimizer(
        ai=AiSequencer(_FakePlanner(error=RuntimeError("planner down"))),
        fallback=_ReverseSequencer(),
    )
    result = asyncio.run(optimizer.optimize(_mixed_request()))

    assert result.method == "reverse"
    assert result.sequence == [5, 4, 3, 2, 1, 0]
    assert result.warnings == ["planner down"]
