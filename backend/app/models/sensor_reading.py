"""Sensor reading history.

One row per coalesced reading. Primary key is the reading id assigned at
ingress, so re-delivery of the same reading overwrites instead of duplicating.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Float, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class SensorReading(Base):
    __tablename__ = "sensor_readings"

    __table_args__ = (
        Index("ix_sensor_readings_equipment_ts", "equipment_id", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    equipment_id: Mapped[str] = mapped_column(
        ForeignKey("equipment.id", ondelete="CASCADE")
    )
    timestamp: Mapped[datetime] = mapped_column()

    temperature: Mapped[float | None] = mapped_column(Float, default=None)
    vibration: Mapped[float | None] = mapped_column(Float, default=None)
    pressure: Mapped[float | None] = mapped_column(Float, default=None)
    humidity: Mapped[float | None] = mapped_column(Float, default=None)

    # --- Electrical ---
    current: Mapped[float | None] = mapped_column(Float, default=None)
    voltage: Mapped[float | None] = mapped_column(Float, default=None)
    power: Mapped[float | None] = mapped_column(Float, default=None)

    # --- Performance ---
    rpm: Mapped[float | None] = mapped_column(Float, default=None)
    additional_metrics: Mapped[dict | None] = mapped_column(JSON, default=None)
