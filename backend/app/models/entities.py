from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base


class Route(Base):
    __tablename__ = "routes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="draft", nullable=False, index=True)
    scheduled_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    actual_end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    start_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    # JSON list of [lon, lat] pairs.
    geometry_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    total_distance_km: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    total_duration_min: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    total_stops: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    estimated_fuel_l: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    vehicle_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vehicle_type: Mapped[str] = mapped_column(String(32), default="van", nullable=False)
    driver_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    driver_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    optimization_priority: Mapped[str] = mapped_column(String(16), default="balanced", nullable=False)

    ai_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ai_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    stops: Mapped[list[Stop]] = relationship(
        "Stop",
        back_populates="route",
        order_by="Stop.sequence_idx",
    )
    snapshots: Mapped[list[ConditionSnapshot]] = relationship(
        "ConditionSnapshot",
        back_populates="route",
        cascade="all, delete-orphan",
    )


class Stop(Base):
    __tablename__ = "stops"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    route_id: Mapped[int | None] = mapped_column(ForeignKey("routes.id", ondelete="SET NULL"), nullable=True, index=True)
    sequence_idx: Mapped[int | None] = mapped_column(Integer, nullable=True)
    address: Mapped[str | None] = mapped_column(String(512), nullable=True)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    tw_earliest: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    tw_latest: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    priority: Mapped[str] = mapped_column(String(16), default="normal", nullable=False, index=True)
    service_time_min: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    package_type: Mapped[str] = mapped_column(String(32), default="standard", nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False, index=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    route: Mapped[Route | None] = relationship("Route", back_populates="stops")


class ConditionSnapshot(Base):
    __tablename__ = "condition_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    route_id: Mapped[int] = mapped_column(ForeignKey("routes.id", ondelete="CASCADE"), nullable=False, index=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    traffic_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    weather_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    recalculation_suggested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recalculation_reasons_json: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    original_eta: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    current_eta: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delay_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    optimization_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(16), default="system", nullable=False)

    route: Mapped[Route] = relationship("Route", back_populates="snapshots")


class ErrorLog(Base):
    __tablename__ = "error_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    route_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
