"""Equipment registry table — system of record for thresholds.

The pipeline only reads this table; equipment CRUD belongs to the
external management service.
"""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Float, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class EquipmentStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    maintenance = "maintenance"
    retired = "retired"


class Equipment(TimestampMixin, Base):
    __tablename__ = "equipment"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    equipment_type: Mapped[str] = mapped_column(String(50), default="")
    location: Mapped[str] = mapped_column(String(100), default="")
    status: Mapped[EquipmentStatus] = mapped_column(default=EquipmentStatus.active)

    max_temperature: Mapped[float] = mapped_column(Float, default=80.0)
    max_vibration: Mapped[float] = mapped_column(Float, default=10.0)
    max_pressure: Mapped[float] = mapped_column(Float, default=100.0)
    min_pressure: Mapped[float] = mapped_column(Float, default=10.0)
    last_maintenance_at: Mapped[datetime | None] = mapped_column(default=None)

    def __repr__(self) -> str:
        return f"<Equipment {self.name} ({self.status.value}) id={self.id}>"
