"""Canonical reading record produced by ingress."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

# Canonical metric names, same set as the sensor_readings columns
METRIC_NAMES = (
    "temperature", "vibration", "pressure", "humidity",
    "current", "voltage", "power", "rpm",
)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Reading:
    equipment_id: str
    timestamp: datetime
    metrics: Mapping[str, float]
    extra: Mapping[str, Any] = field(default_factory=dict)
    reading_id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metrics", MappingProxyType(dict(self.metrics)))
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra)))

    def merged(self, other: Reading) -> Reading:
        """Union of two readings for the same equipment; newest timestamp wins."""
        newer, older = (other, self) if other.timestamp >= self.timestamp else (self, other)
        return Reading(
            equipment_id=self.equipment_id,
            timestamp=newer.timestamp,
            metrics={**older.metrics, **newer.metrics},
            extra={**older.extra, **newer.extra},
            reading_id=self.reading_id,
        )
