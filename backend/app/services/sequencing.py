from __future__ import annotations

import logging
from typing import Protocol, Sequence

from app.providers.ai_planner import ChatCompletionsPlanner, PlannerReply
from app.schemas.conditions import (
    EstimatedMetrics,
    OptimizationResult,
    Point,
    SequencedStop,
    SequencingRequest,
    StopInput,
)
from app.services.geospatial import distance, path_length


LOGGER = logging.getLogger(__name__)
PRIORITY_ORDER = ("urgent", "high", "normal", "low")
FALLBACK_SPEED_KMH = 40.0
FUEL_L_PER_KM = 0.1
FALLBACK_METHOD = "fallback"
FALLBACK_CONFIDENCE = 0.6
FALLBACK_WARNING = "Using fallback optimization - AI service unavailable"
FALLBACK_REASONING = "Fallback optimization using nearest-neighbor with priority grouping"


class Sequencer(Protocol):
    async def sequence(self, request: SequencingRequest) -> OptimizationResult: ...


def annotate_stops(sequence: Sequence[int], stops: Sequence[StopInput]) -> list[SequencedStop]:
    return [
        SequencedStop(position=position, original_index=idx, stop_id=stops[idx].stop_id)
        for position, idx in enumerate(sequence, start=1)
    ]


def ai_confidence(request: SequencingRequest, reply: PlannerReply) -> float:
    confidence = 0.7
    if all(stop.earliest and stop.latest for stop in request.stops):
        confidence += 0.1
    if len(reply.reasoning or "") > 20:
        confidence += 0.1
    if reply.metrics.total_distance_km:
        confidence += 0.1
    return min(round(confidence, 2), 1.0)


def nearest_neighbour_order(start: Point, stops: Sequence[StopInput]) -> list[int]:
    """Priority buckets urgent to low, greedy nearest stop inside each bucket."""
    order: list[int] = []
    current = start
    for level in PRIORITY_ORDER:
        remaining = [idx for idx, stop in enumerate(stops) if stop.priority == level]
        while remaining:
            # min() keeps the first of equal distances, so ties go to the lowest index.
            nearest = min(remaining, key=lambda idx: distance(current, stops[idx].point))
            remaining.remove(nearest)
            order.append(nearest)
            current = stops[nearest].point
    return order


def sequence_distance_km(start: Point, end: Point | None, stops: Sequence[StopInput], order: Sequence[int]) -> float:
    points = [start, *(stops[idx].point for idx in order)]
    if end is not None:
        points.append(end)
    return path_length(points)


class FallbackSequencer:
    """Deterministic sequencing used whenever the AI planner is off or fails."""

    async def sequence(self, request: SequencingRequest) -> OptimizationResult:
        return self.sequence_sync(request)

    def sequence_sync(self, request: SequencingRequest) -> OptimizationResult:
        order = nearest_neighbour_order(request.start, request.stops)
        total_km = sequence_distance_km(request.start, request.end, request.stops, order)

        return OptimizationResult(
            sequence=order,
            stops=annotate_stops(order, request.stops),
            metrics=EstimatedMetrics(
                total_distance_km=round(total_km, 1),
                total_duration_min=round(total_km / FALLBACK_SPEED_KMH * 60),
                fuel_estimate_l=round(total_km * FUEL_L_PER_KM, 1),
            ),
            reasoning=FALLBACK_REASONING,
            warnings=[FALLBACK_WARNING],
            confidence=FALLBACK_CONFIDENCE,
            method=FALLBACK_METHOD,
        )


class AiSequencer:
    def __init__(self, planner: ChatCompletionsPlanner | None = None) -> None:
        self.planner = planner or ChatCompletionsPlanner()

    @property
    def enabled(self) -> bool:
        return self.planner.enabled

    async def sequence(self, request: SequencingRequest) -> OptimizationResult:
        reply = await self.planner.plan(request)
        return OptimizationResult(
            sequence=reply.sequence,
            stops=annotate_stops(reply.sequence, request.stops),
            metrics=reply.metrics,
            reasoning=reply.reasoning,
            warnings=reply.warnings,
            alternatives=reply.alternatives,
            confidence=ai_confidence(request, reply),
            method=reply.model,
        )


class RouteOptimizer:
    """Entry point for stop sequencing; never raises for planner failures."""

    def __init__(self, ai: AiSequencer | None = None, fallback: Sequencer | None = None) -> None:
        self.ai = ai or AiSequencer()
        self.fallback = fallback or FallbackSequencer()

    async def optimize(self, request: SequencingRequest) -> OptimizationResult:
        if not request.stops:
            return OptimizationResult(sequence=[], stops=[], reasoning="No stops to sequence", method=FALLBACK_METHOD)

        if not self.ai.enabled:
            return await self.fallback.sequence(request)

        try:
            return await self.ai.sequence(request)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("AI planner failed, using fallback sequencing (stops=%s): %s", len(request.stops), exc)
            result = await self.fallback.sequence(request)
            result.warnings.append(str(exc))
            return result


_OPTIMIZER: RouteOptimizer | None = None


def get_route_optimizer() -> RouteOptimizer:
    global _OPTIMIZER
    if _OPTIMIZER is None:
        _OPTIMIZER = RouteOptimizer()
    return _OPTIMIZER
