"""Shared fixtures and fakes for the telemetry pipeline tests."""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta, timezone

import pytest

from core.diagnostics import Diagnostics
from core.errors import AlertConflict, RegistryUnavailable, SinkUnavailable
from models.alert import AlertStatus
from services.alert_sink import ActiveAlert, AlertNotification, AlertSink
from services.reading import Reading
from services.registry import EquipmentProfile, EquipmentRegistry, Thresholds
from services.rolling_state import RollingStateStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ── Factories ────────────────────────────────────────────────────────────


def make_reading(equipment_id: str = "eq-1", seconds: float = 0, **metrics) -> Reading:
    return Reading(
        equipment_id=equipment_id,
        timestamp=T0 + timedelta(seconds=seconds),
        metrics=metrics,
    )


def make_profile(
    equipment_id: str = "eq-1", *, last_maintenance_at: datetime | None = None, **thresholds,
) -> EquipmentProfile:
    return EquipmentProfile(
        equipment_id=equipment_id,
        name=f"Pump {equipment_id}",
        thresholds=Thresholds(**thresholds),
        last_maintenance_at=last_maintenance_at,
    )


# ── Fakes ────────────────────────────────────────────────────────────────


class FakeProfileSource:
    """Profile source with call counting and injectable outages."""

    def __init__(self, *profiles: EquipmentProfile, failures: int = 0):
        self.profiles = {p.equipment_id: p for p in profiles}
        self.failures = failures
        self.calls = 0

    async def get_profile(self, equipment_id: str) -> EquipmentProfile | None:
        self.calls += 1
        await asyncio.sleep(0)
        if self.failures > 0:
            self.failures -= 1
            raise RegistryUnavailable("registry down", equipment_id=equipment_id)
        return self.profiles.get(equipment_id)


class InMemoryStorage:
    """AlertStorage double that enforces one active alert per key.

    ``fail`` maps a method name to the number of SinkUnavailable errors to
    raise before succeeding. Every call yields to the event loop so racing
    callers would interleave.
    """

    def __init__(self, history: dict[str, list[Reading]] | None = None):
        self.readings: dict[str, Reading] = {}
        self.alerts: dict[str, ActiveAlert] = {}
        self.history = history or {}
        self.fail: dict[str, int] = {}

    async def _enter(self, method: str) -> None:
        await asyncio.sleep(0)
        if self.fail.get(method, 0) > 0:
            self.fail[method] -= 1
            raise SinkUnavailable(f"{method} unavailable")

    async def upsert_reading(self, reading: Reading) -> None:
        await self._enter("upsert_reading")
        self.readings[reading.reading_id] = reading

    async def recent_readings(self, equipment_id: str, limit: int) -> list[Reading]:
        await self._enter("recent_readings")
        return list(self.history.get(equipment_id, []))[-limit:]

    async def insert_alert(self, alert: ActiveAlert) -> None:
        await self._enter("insert_alert")
        for stored in self.alerts.values():
            if (
                stored.equipment_id == alert.equipment_id
                and stored.rule_id == alert.rule_id
                and stored.status == AlertStatus.active
            ):
                raise AlertConflict("duplicate active alert")
        self.alerts[alert.alert_id] = copy.copy(alert)

    async def touch_alert(self, alert_id, *, last_seen_at, severity=None, message=None) -> None:
        await self._enter("touch_alert")
        stored = self.alerts[alert_id]
        if stored.status == AlertStatus.resolved:
            return
        stored.last_seen_at = last_seen_at
        if severity is not None:
            stored.severity = severity
        if message is not None:
            stored.message = message

    async def transition_alert(self, alert_id, status, at, *, by=None) -> bool:
        await self._enter("transition_alert")
        stored = self.alerts[alert_id]
        if stored.status == AlertStatus.resolved:
            return False
        if status == AlertStatus.acknowledged and stored.status != AlertStatus.active:
            return False
        stored.status = status
        if status == AlertStatus.resolved:
            stored.resolved_at = at
        return True

    async def find_active(self, equipment_id: str, rule_id: str) -> ActiveAlert | None:
        await self._enter("find_active")
        for stored in self.alerts.values():
            if (
                stored.equipment_id == equipment_id
                and stored.rule_id == rule_id
                and stored.status == AlertStatus.active
            ):
                return copy.copy(stored)
        return None

    async def load_active(self) -> list[ActiveAlert]:
        await self._enter("load_active")
        return [
            copy.copy(a) for a in self.alerts.values()
            if a.status in (AlertStatus.active, AlertStatus.acknowledged)
        ]

    def by_status(self, status: AlertStatus) -> list[ActiveAlert]:
        return [a for a in self.alerts.values() if a.status == status]


class RecordingNotifier:

    def __init__(self) -> None:
        self.sent: list[AlertNotification] = []

    async def notify(self, notification: AlertNotification) -> None:
        self.sent.append(notification)

    def transitions(self) -> list[str]:
        return [n.transition for n in self.sent]


class RecordingCoordinator:
    """Stands in for DeliveryCoordinator.submit in ingress tests."""

    def __init__(self) -> None:
        self.submitted: list[Reading] = []

    def submit(self, reading: Reading) -> bool:
        self.submitted.append(reading)
        return True


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def diagnostics() -> Diagnostics:
    return Diagnostics()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sink(storage, notifier) -> AlertSink:
    return AlertSink(storage, notifier, hysteresis=3)


@pytest.fixture
def profile() -> EquipmentProfile:
    return make_profile("eq-1", max_temperature=80.0, min_pressure=10.0)


@pytest.fixture
def registry(profile) -> EquipmentRegistry:
    return EquipmentRegistry(FakeProfileSource(profile))


@pytest.fixture
def store() -> RollingStateStore:
    return RollingStateStore(capacity=10)
