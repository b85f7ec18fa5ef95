from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Sequence

import httpx
from pydantic import BaseModel, Field, ValidationError

from app.providers.errors import MalformedProviderResponse, ProviderError, ProviderUnavailable
from app.providers.http import request_json
from app.schemas.conditions import (
    BoundingBox,
    FlowSample,
    Incident,
    IncidentGeometry,
    IncidentSeverity,
    IncidentType,
    Point,
    TrafficSummary,
)
from app.services.geospatial import bounding_box, sample_points
from app.services.traffic_delay import congestion_level
from app.utils.settings import get_settings


LOGGER = logging.getLogger(__name__)
PROVIDER_NAME = "tomtom"
FLOW_ZOOM = 10
INCIDENT_FIELDS = (
    "{incidents{type,geometry{type,coordinates},properties{iconCategory,magnitudeOfDelay,"
    "events{description,code},startTime,endTime,from,to,length,delay,roadNumbers}}}"
)
INCIDENT_CATEGORY_FILTER = "0,1,2,3,4,5,6,7,8,9,10,11,14"
INCIDENT_TYPE_BY_ICON: dict[int, IncidentType] = {
    1: "accident",
    2: "congestion",
    3: "roadwork",
    4: "roadwork",
    5: "closure",
    6: "closure",
    7: "congestion",
    8: "weather",
    9: "event",
}


class _FlowSegmentData(BaseModel):
    currentSpeed: float
    freeFlowSpeed: float
    confidence: float | None = None
    roadClosure: bool = False


class _FlowResponse(BaseModel):
    flowSegmentData: _FlowSegmentData


class _IncidentEvent(BaseModel):
    description: str | None = None


class _IncidentProperties(BaseModel):
    iconCategory: int | None = None
    magnitudeOfDelay: int | None = None
    events: list[_IncidentEvent] = Field(default_factory=list)
    startTime: datetime | None = None
    endTime: datetime | None = None
    delay: float | None = None
    roadNumbers: list[str] = Field(default_factory=list)


class _IncidentGeometry(BaseModel):
    type: str = "Point"
    coordinates: list[Any] = Field(default_factory=list)


class _IncidentFeature(BaseModel):
    geometry: _IncidentGeometry | None = None
    properties: _IncidentProperties = Field(default_factory=_IncidentProperties)


class _IncidentsResponse(BaseModel):
    incidents: list[_IncidentFeature] = Field(default_factory=list)


def map_incident_type(icon_category: int | None) -> IncidentType:
    if icon_category is None:
        return "other"
    return INCIDENT_TYPE_BY_ICON.get(int(icon_category), "other")


def map_incident_severity(magnitude: int | None) -> IncidentSeverity:
    if magnitude is None or magnitude <= 1:
        return "minor"
    if magnitude <= 2:
        return "moderate"
    if magnitude <= 3:
        return "major"
    return "severe"


def _to_incident(feature: _IncidentFeature) -> Incident:
    props = feature.properties
    geometry = feature.geometry or _IncidentGeometry()
    description = next((event.description for event in props.events if event.description), None)
    return Incident(
        type=map_incident_type(props.iconCategory),
        severity=map_incident_severity(props.magnitudeOfDelay),
        geometry=IncidentGeometry(type=geometry.type, coordinates=geometry.coordinates),
        description=description or "Traffic incident",
        delay_s=float(props.delay or 0),
        start_time=props.startTime,
        end_time=props.endTime,
        affected_roads=props.roadNumbers,
    )


class TomTomTrafficProvider:
    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = get_settings()
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.settings.tomtom_api_key)

    @asynccontextmanager
    async def _client(self, client: httpx.AsyncClient | None = None) -> AsyncIterator[httpx.AsyncClient]:
        if client is not None:
            yield client
            return
        async with httpx.AsyncClient(
            timeout=self.settings.traffic_timeout_seconds,
            transport=self._transport,
        ) as owned:
            yield owned

    def _require_key(self) -> str:
        if not self.enabled:
            raise ProviderUnavailable(
                "TomTom API key is not configured",
                code="PROVIDER_DISABLED",
                provider=PROVIDER_NAME,
            )
        return str(self.settings.tomtom_api_key)

    async def get_flow(self, lat: float, lng: float, *, client: httpx.AsyncClient | None = None) -> FlowSample:
        key = self._require_key()
        url = f"{self.settings.tomtom_base_url}/traffic/services/4/flowSegmentData/absolute/{FLOW_ZOOM}/json"
        async with self._client(client) as http:
            payload = await request_json(
                http,
                "GET",
                url,
                provider=PROVIDER_NAME,
                params={"key": key, "point": f"{lat},{lng}", "unit": "KMPH"},
                max_attempts=self.settings.provider_max_attempts,
            )
        try:
            data = _FlowResponse.model_validate(payload).flowSegmentData
        except ValidationError as exc:
            raise MalformedProviderResponse(
                "TomTom flow payload missing speeds",
                code="PROVIDER_MALFORMED",
                provider=PROVIDER_NAME,
                details={"errors": exc.errors(include_url=False)[:3]},
            ) from exc
        return FlowSample(
            current_speed=data.currentSpeed,
            free_flow_speed=data.freeFlowSpeed,
            confidence=data.confidence,
            road_closure=data.roadClosure,
        )

    async def get_incidents(self, bbox: BoundingBox, *, client: httpx.AsyncClient | None = None) -> list[Incident]:
        key = self._require_key()
        url = f"{self.settings.tomtom_base_url}/traffic/services/5/incidentDetails"
        async with self._client(client) as http:
            payload = await request_json(
                http,
                "GET",
                url,
                provider=PROVIDER_NAME,
                params={
                    "key": key,
                    "bbox": f"{bbox.min_lng},{bbox.min_lat},{bbox.max_lng},{bbox.max_lat}",
                    "fields": INCIDENT_FIELDS,
                    "language": "en-US",
                    "categoryFilter": INCIDENT_CATEGORY_FILTER,
                },
                max_attempts=self.settings.provider_max_attempts,
            )
        try:
            parsed = _IncidentsResponse.model_validate(payload or {})
        except ValidationError as exc:
            raise MalformedProviderResponse(
                "TomTom incidents payload malformed",
                code="PROVIDER_MALFORMED",
                provider=PROVIDER_NAME,
                details={"errors": exc.errors(include_url=False)[:3]},
            ) from exc
        return [_to_incident(feature) for feature in parsed.incidents]

    async def fetch_traffic(self, points: Sequence[Point], bbox: BoundingBox | None = None) -> TrafficSummary:
        """Average flow over sampled points plus incidents inside the route's box.

        Individual flow failures are dropped; if none succeed the summary is
        returned with congestion ``unknown``. An incidents failure is raised.
        """
        self._require_key()
        samples = sample_points(list(points), self.settings.traffic_sample_points)
        box = bbox or bounding_box(list(points))

        async with self._client() as http:
            flow_results, incidents = await asyncio.gather(
                asyncio.gather(
                    *(self.get_flow(lat, lng, client=http) for lng, lat in samples),
                    return_exceptions=True,
                ),
                self.get_incidents(box, client=http),
                return_exceptions=True,
            )

        if isinstance(incidents, BaseException):
            raise incidents

        flows = [item for item in flow_results if isinstance(item, FlowSample)]
        failures = [item for item in flow_results if isinstance(item, ProviderError)]
        if failures:
            LOGGER.info(
                "TomTom flow sampling dropped %s of %s points (first error=%s)",
                len(failures),
                len(samples),
                failures[0],
            )
        unexpected = [
            item for item in flow_results if isinstance(item, BaseException) and not isinstance(item, ProviderError)
        ]
        if unexpected:
            raise unexpected[0]

        limited = incidents[: self.settings.traffic_max_incidents]
        if not flows:
            return TrafficSummary(congestion_level="unknown", incidents=limited, last_updated=datetime.utcnow())

        avg_current = sum(flow.current_speed for flow in flows) / len(flows)
        avg_free_flow = sum(flow.free_flow_speed for flow in flows) / len(flows)
        return TrafficSummary(
            avg_current_speed=round(avg_current),
            avg_free_flow_speed=round(avg_free_flow),
            congestion_level=congestion_level(avg_current, avg_free_flow),
            sample_count=len(flows),
            incidents=limited,
            last_updated=datetime.utcnow(),
        )


_PROVIDER: TomTomTrafficProvider | None = None


def get_traffic_provider() -> TomTomTrafficProvider:
    global _PROVIDER
    if _PROVIDER is None:
        _PROVIDER = TomTomTrafficProvider()
    return _PROVIDER
