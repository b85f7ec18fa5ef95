from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

from app.providers.errors import MalformedProviderResponse
from app.providers.http import request_json
from app.schemas.conditions import (
    AlternativeSequence,
    EstimatedMetrics,
    SequencingRequest,
)
from app.utils.errors import OptimizerParseFailure
from app.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)
PROVIDER_NAME = "ai-planner"
MAX_ALTERNATIVES = 2
FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

SYSTEM_PROMPT = """You are an expert logistics route optimization AI. Analyze delivery data and generate the most efficient route sequence.

Respond with valid JSON containing:
1. "sequence": Array of delivery indices in optimal order (0-indexed)
2. "reasoning": Brief explanation of optimization logic
3. "estimatedMetrics": Object with totalDistance (km), totalDuration (minutes), fuelEstimate (liters)
4. "warnings": Array of any concerns
5. "alternativeSequences": Array of 1-2 alternatives with metrics

Consider: time windows, priority levels, geographic clustering, traffic, weather, vehicle capacity.
Respond with valid JSON only."""


class _PlannerMetrics(BaseModel):
    model_config = ConfigDict(extra="ignore")

    totalDistance: float | None = None
    totalDuration: float | None = None
    fuelEstimate: float | None = None

    def to_metrics(self) -> EstimatedMetrics:
        return EstimatedMetrics(
            total_distance_km=self.totalDistance,
            total_duration_min=self.totalDuration,
            fuel_estimate_l=self.fuelEstimate,
        )


class _PlannerAlternative(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sequence: list[Any] = Field(default_factory=list)
    description: str | None = None
    metrics: _PlannerMetrics | None = None


class _PlannerReply(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sequence: list[StrictInt]
    reasoning: str | None = None
    estimatedMetrics: _PlannerMetrics = Field(default_factory=_PlannerMetrics)
    warnings: list[str] = Field(default_factory=list)
    alternativeSequences: list[Any] = Field(default_factory=list)


class _Message(BaseModel):
    content: str


class _Choice(BaseModel):
    message: _Message


class _ChatCompletion(BaseModel):
    choices: list[_Choice] = Field(min_length=1)


class PlannerReply(BaseModel):
    """Validated planner answer, indices refer to the request's stop order."""

    sequence: list[int]
    reasoning: str
    metrics: EstimatedMetrics
    warnings: list[str] = Field(default_factory=list)
    alternatives: list[AlternativeSequence] = Field(default_factory=list)
    model: str


def is_permutation(sequence: list[Any], size: int) -> bool:
    if len(sequence) != size:
        return False
    if not all(isinstance(idx, int) and not isinstance(idx, bool) for idx in sequence):
        return False
    return sorted(sequence) == list(range(size))


def _strip_code_fence(text: str) -> str:
    match = FENCED_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _parse_alternatives(raw: list[Any], stop_count: int) -> list[AlternativeSequence]:
    kept: list[AlternativeSequence] = []
    for item in raw:
        try:
            alt = _PlannerAlternative.model_validate(item)
        except ValidationError:
            continue
        if not is_permutation(alt.sequence, stop_count):
            continue
        kept.append(
            AlternativeSequence(
                sequence=list(alt.sequence),
                description=alt.description,
                metrics=alt.metrics.to_metrics() if alt.metrics else None,
            )
        )
        if len(kept) >= MAX_ALTERNATIVES:
            break
    return kept


def parse_planner_response(text: str, stop_count: int, *, model: str = "unknown") -> PlannerReply:
    """Turn the assistant text into a ``PlannerReply`` or raise ``OptimizerParseFailure``."""
    body = _strip_code_fence(text or "")
    try:
        decoded = json.loads(body)
    except ValueError as exc:
        raise OptimizerParseFailure("Failed to parse AI optimization response: invalid JSON") from exc

    try:
        reply = _PlannerReply.model_validate(decoded)
    except ValidationError as exc:
        raise OptimizerParseFailure("Failed to parse AI optimization response: invalid shape") from exc

    if not is_permutation(reply.sequence, stop_count):
        raise OptimizerParseFailure("Failed to parse AI optimization response: invalid delivery indices")

    return PlannerReply(
        sequence=reply.sequence,
        reasoning=reply.reasoning or "AI-optimized route",
        metrics=reply.estimatedMetrics.to_metrics(),
        warnings=reply.warnings,
        alternatives=_parse_alternatives(reply.alternativeSequences, stop_count),
        model=model,
    )


def build_user_prompt(request: SequencingRequest) -> str:
    stops = [
        {
            "index": idx,
            "address": stop.address,
            "coordinates": [stop.lon, stop.lat],
            "timeWindow": {
                "earliest": stop.earliest.isoformat() if stop.earliest else None,
                "latest": stop.latest.isoformat() if stop.latest else None,
            },
            "priority": stop.priority,
            "serviceTime": stop.service_time_min,
            "packageType": stop.package_type,
        }
        for idx, stop in enumerate(request.stops)
    ]
    end = request.end or request.start

    traffic = "N/A"
    if request.traffic is not None:
        traffic = json.dumps(
            {
                "congestionLevel": request.traffic.congestion_level,
                "incidents": len(request.traffic.incidents),
            }
        )
    weather = "N/A"
    if request.weather is not None and request.weather.current is not None:
        weather = json.dumps(
            {
                "condition": request.weather.current.condition,
                "visibility": request.weather.current.visibility_km,
            }
        )

    return (
        "OPTIMIZE ROUTE\n"
        f"Start: {json.dumps({'coordinates': list(request.start)})}\n"
        f"End: {json.dumps({'coordinates': list(end)})}\n"
        f"Vehicle: {request.vehicle_type}\n"
        f"Priority: {request.priority}\n\n"
        f"DELIVERIES ({len(stops)}):\n"
        f"{json.dumps(stops, indent=2)}\n\n"
        "CONDITIONS:\n"
        f"Traffic: {traffic}\n"
        f"Weather: {weather}\n\n"
        "Return optimal delivery sequence as JSON."
    )


class ChatCompletionsPlanner:
    """OpenAI-compatible chat-completions client used for stop sequencing."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = get_settings()
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return self.settings.ai_planner_enabled

    @property
    def model(self) -> str:
        return self.settings.ai_planner_model

    async def plan(self, request: SequencingRequest) -> PlannerReply:
        async with httpx.AsyncClient(
            timeout=self.settings.ai_planner_timeout_seconds,
            transport=self._transport,
        ) as http:
            payload = await request_json(
                http,
                "POST",
                self.settings.ai_planner_url,
                provider=PROVIDER_NAME,
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": build_user_prompt(request)},
                    ],
                    "temperature": 0.3,
                    "max_tokens": 4000,
                },
                headers={"Authorization": f"Bearer {self.settings.ai_planner_api_key}"},
            )

        try:
            completion = _ChatCompletion.model_validate(payload)
        except ValidationError as exc:
            raise MalformedProviderResponse(
                "Planner reply has no choices",
                code="PROVIDER_MALFORMED",
                provider=PROVIDER_NAME,
                details={"errors": exc.errors(include_url=False)[:3]},
            ) from exc

        return parse_planner_response(
            completion.choices[0].message.content,
            len(request.stops),
            model=self.model,
        )
