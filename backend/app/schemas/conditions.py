from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator


CongestionLevel = Literal["free", "light", "moderate", "heavy", "severe", "unknown"]
IncidentType = Literal["accident", "congestion", "roadwork", "closure", "weather", "event", "other"]
IncidentSeverity = Literal["minor", "moderate", "major", "severe"]
WeatherCondition = Literal["clear", "cloudy", "rain", "heavy_rain", "snow", "fog", "storm", "hail", "wind"]
AlertSeverity = Literal["medium", "high"]
StopPriority = Literal["low", "normal", "high", "urgent"]
OptimizationPriority = Literal["time", "distance", "cost", "balanced"]
VehicleType = Literal["car", "van", "truck", "motorcycle"]
PackageType = Literal["standard", "fragile", "perishable", "hazardous", "oversized"]

# (longitude, latitude)
Point = tuple[float, float]


class BoundingBox(BaseModel):
    min_lat: float = 0.0
    min_lng: float = 0.0
    max_lat: float = 0.0
    max_lng: float = 0.0


class FlowSample(BaseModel):
    current_speed: float
    free_flow_speed: float
    confidence: float | None = None
    road_closure: bool = False


class IncidentGeometry(BaseModel):
    type: str = "Point"
    coordinates: list = Field(default_factory=list)


class Incident(BaseModel):
    type: IncidentType = "other"
    severity: IncidentSeverity = "minor"
    geometry: IncidentGeometry = Field(default_factory=IncidentGeometry)
    description: str = "Traffic incident"
    delay_s: float = 0
    start_time: datetime | None = None
    end_time: datetime | None = None
    affected_roads: list[str] = Field(default_factory=list)


class TrafficSummary(BaseModel):
    avg_current_speed: float | None = None
    avg_free_flow_speed: float | None = None
    congestion_level: CongestionLevel = "unknown"
    congestion_percentage: int = 0
    delay_minutes: int = 0
    sample_count: int = 0
    incidents: list[Incident] = Field(default_factory=list)
    last_updated: datetime | None = None


class CurrentWeather(BaseModel):
    condition: WeatherCondition = "clear"
    weather_code: int | None = None
    temperature_c: float | None = None
    feels_like_c: float | None = None
    humidity_pct: float | None = None
    wind_speed_kmh: float | None = None
    wind_direction: str = "N/A"
    visibility_km: float | None = None
    precipitation_mm: float | None = None
    description: str = "Unknown conditions"


class HourlyForecast(BaseModel):
    time: datetime
    condition: WeatherCondition = "clear"
    temperature_c: float | None = None
    precipitation_probability: float | None = None
    visibility_km: float | None = None


class DailyForecast(BaseModel):
    day: date
    condition: WeatherCondition = "clear"
    temperature_max_c: float | None = None
    temperature_min_c: float | None = None
    precipitation_sum_mm: float | None = None
    precipitation_probability: float | None = None


class WeatherAlert(BaseModel):
    type: str
    severity: AlertSeverity
    message: str
    start_time: datetime | None = None


class WeatherReport(BaseModel):
    current: CurrentWeather | None = None
    hourly: list[HourlyForecast] = Field(default_factory=list)
    daily: list[DailyForecast] = Field(default_factory=list)
    alerts: list[WeatherAlert] = Field(default_factory=list)
    last_updated: datetime | None = None


class RevisedEta(BaseModel):
    original_eta: datetime | None = None
    current_eta: datetime | None = None
    delay_minutes: int = 0


class RecalculationVerdict(BaseModel):
    suggested: bool = False
    reasons: list[str] = Field(default_factory=list)

    @property
    def reason(self) -> str | None:
        return "; ".join(self.reasons) or None


class StopInput(BaseModel):
    lon: float = Field(ge=-180, le=180)
    lat: float = Field(ge=-90, le=90)
    earliest: datetime | None = None
    latest: datetime | None = None
    priority: StopPriority = "normal"
    service_time_min: int = Field(default=10, ge=0)
    package_type: PackageType = "standard"
    stop_id: int | None = None
    address: str | None = None

    @model_validator(mode="after")
    def ensure_window_order(self) -> "StopInput":
        if self.earliest and self.latest and self.earliest > self.latest:
            raise ValueError("Time window earliest must not be after latest")
        return self

    @property
    def point(self) -> Point:
        return (self.lon, self.lat)


class SequencingRequest(BaseModel):
    stops: list[StopInput]
    start: Point
    end: Point | None = None
    vehicle_type: VehicleType = "van"
    priority: OptimizationPriority = "balanced"
    traffic: TrafficSummary | None = None
    weather: WeatherReport | None = None


class EstimatedMetrics(BaseModel):
    total_distance_km: float | None = None
    total_duration_min: float | None = None
    fuel_estimate_l: float | None = None


class SequencedStop(BaseModel):
    position: int
    original_index: int
    stop_id: int | None = None


class AlternativeSequence(BaseModel):
    sequence: list[int]
    description: str | None = None
    metrics: EstimatedMetrics | None = None


class OptimizationResult(BaseModel):
    sequence: list[int]
    stops: list[SequencedStop]
    metrics: EstimatedMetrics = Field(default_factory=EstimatedMetrics)
    reasoning: str = ""
    warnings: list[str] = Field(default_factory=list)
    alternatives: list[AlternativeSequence] = Field(default_factory=list)
    confidence: float = Field(default=0.6, ge=0, le=1)
    method: str = "fallback"


class SnapshotOut(BaseModel):
    id: int
    route_id: int
    captured_at: datetime
    traffic: TrafficSummary | None = None
    weather: WeatherReport | None = None
    verdict: RecalculationVerdict
    eta: RevisedEta
    notification_sent: bool = False
    notification_sent_at: datetime | None = None
    optimization: OptimizationResult | None = None
    source: str = "system"
