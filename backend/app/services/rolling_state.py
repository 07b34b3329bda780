"""Rolling State Store — bounded per-equipment window with incremental stats.

Each equipment keeps the last N readings in a ring buffer plus per-metric
sum/count (mean), max and latest value. Updates are O(1); a metric is
rescanned only when the evicted value was its max, and the whole window is
rescanned every ``recompute_every`` updates to bound float drift.

Pure in-memory computation, nothing here awaits. Callers guarantee that
updates for one equipment id are serialized (coordinator lanes).
"""
from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Iterable, Mapping

from services.reading import Reading


@dataclass(frozen=True)
class AggregateSnapshot:
    equipment_id: str
    size: int
    capacity: int
    mean: Mapping[str, float]
    max: Mapping[str, float]
    latest: Mapping[str, float]
    trend: Mapping[str, int]
    count: Mapping[str, int]
    last_timestamp: datetime | None = None


def _sign(latest: float, mean: float) -> int:
    if math.isclose(latest, mean, rel_tol=1e-9, abs_tol=1e-12):
        return 0
    return 1 if latest > mean else -1


class RollingAggregate:

    def __init__(self, equipment_id: str, capacity: int = 10, recompute_every: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.equipment_id = equipment_id
        self.capacity = capacity
        self.recompute_every = max(1, recompute_every)
        self._buffer: deque[Reading] = deque()
        self._sum: dict[str, float] = {}
        self._count: dict[str, int] = {}
        self._max: dict[str, float] = {}
        self._latest: dict[str, float] = {}
        self._since_recompute = 0

    def __len__(self) -> int:
        return len(self._buffer)

    def values(self, metric: str) -> list[float]:
        return [r.metrics[metric] for r in self._buffer if metric in r.metrics]

    # ------------------------------------------------------------------
    def push(self, reading: Reading) -> None:
        stale: set[str] = set()
        if len(self._buffer) >= self.capacity:
            evicted = self._buffer.popleft()
            for metric, value in evicted.metrics.items():
                self._count[metric] -= 1
                if self._count[metric] == 0:
                    del self._sum[metric], self._count[metric]
                    del self._max[metric], self._latest[metric]
                    continue
                self._sum[metric] -= value
                if value >= self._max[metric]:
                    stale.add(metric)

        self._buffer.append(reading)
        for metric, value in reading.metrics.items():
            if metric in self._count:
                self._sum[metric] += value
                self._count[metric] += 1
                if value > self._max[metric]:
                    self._max[metric] = value
            else:
                self._sum[metric] = value
                self._count[metric] = 1
                self._max[metric] = value
            self._latest[metric] = value

        self._since_recompute += 1
        if self._since_recompute >= self.recompute_every:
            self.recompute()
        else:
            for metric in stale:
                self._recompute_metric(metric)

    def recompute(self) -> None:
        metrics = {m for r in self._buffer for m in r.metrics}
        self._sum.clear()
        self._count.clear()
        self._max.clear()
        self._latest.clear()
        for metric in metrics:
            self._recompute_metric(metric)
        self._since_recompute = 0

    def _recompute_metric(self, metric: str) -> None:
        values = self.values(metric)
        self._sum[metric] = math.fsum(values)
        self._count[metric] = len(values)
        self._max[metric] = max(values)
        self._latest[metric] = values[-1]

    # ------------------------------------------------------------------
    def snapshot(self) -> AggregateSnapshot:
        mean = {m: self._sum[m] / self._count[m] for m in self._count}
        return AggregateSnapshot(
            equipment_id=self.equipment_id,
            size=len(self._buffer),
            capacity=self.capacity,
            mean=MappingProxyType(mean),
            max=MappingProxyType(dict(self._max)),
            latest=MappingProxyType(dict(self._latest)),
            trend=MappingProxyType({m: _sign(self._latest[m], mean[m]) for m in mean}),
            count=MappingProxyType(dict(self._count)),
            last_timestamp=self._buffer[-1].timestamp if self._buffer else None,
        )


class RollingStateStore:

    def __init__(self, capacity: int = 10, recompute_every: int = 100):
        self.capacity = capacity
        self.recompute_every = recompute_every
        self._aggregates: dict[str, RollingAggregate] = {}

    def __len__(self) -> int:
        return len(self._aggregates)

    def has(self, equipment_id: str) -> bool:
        return equipment_id in self._aggregates

    def _aggregate(self, equipment_id: str) -> RollingAggregate:
        agg = self._aggregates.get(equipment_id)
        if agg is None:
            agg = RollingAggregate(equipment_id, self.capacity, self.recompute_every)
            self._aggregates[equipment_id] = agg
        return agg

    def update(self, equipment_id: str, reading: Reading) -> AggregateSnapshot:
        if reading.equipment_id != equipment_id:
            raise ValueError(
                f"reading for {reading.equipment_id!r} routed to {equipment_id!r}"
            )
        agg = self._aggregate(equipment_id)
        agg.push(reading)
        return agg.snapshot()

    def _build(self, equipment_id: str, readings: Iterable[Reading]) -> RollingAggregate:
        agg = RollingAggregate(equipment_id, self.capacity, self.recompute_every)
        for reading in readings:
            agg.push(reading)
        return agg

    def seed(self, equipment_id: str, readings: Iterable[Reading]) -> AggregateSnapshot:
        """Replace the window with stored history, oldest first."""
        agg = self._build(equipment_id, readings)
        self._aggregates[equipment_id] = agg
        return agg.snapshot()

    def preview(self, equipment_id: str, readings: Iterable[Reading]) -> AggregateSnapshot:
        """Snapshot of a window over *readings*; the store is left untouched."""
        return self._build(equipment_id, readings).snapshot()

    def snapshot(self, equipment_id: str) -> AggregateSnapshot | None:
        agg = self._aggregates.get(equipment_id)
        return agg.snapshot() if agg else None
