"""Tests for alert de-duplication, hysteresis and escalation."""

import asyncio
from datetime import timedelta

import pytest

from conftest import T0, RecordingNotifier
from core.errors import SinkUnavailable
from models.alert import AlertSeverity, AlertStatus
from services.alert_sink import ActiveAlert, AlertNotification, AlertSink
from services.rule_evaluator import RuleFiring


def _firing(rule_id="temperature_high", severity=AlertSeverity.critical, value=85.0):
    return RuleFiring(
        rule_id=rule_id,
        metric="temperature",
        severity=severity,
        value=value,
        threshold=80.0,
        title="High Temperature Alert",
        message=f"Temperature ({value:g}°C) exceeds maximum threshold (80°C)",
    )


def _at(i: int):
    return T0 + timedelta(seconds=i)


class TestAlertSink:

    @pytest.mark.asyncio
    async def test_first_firing_opens(self, sink, storage, notifier):
        notes = await sink.process("eq-1", [_firing()], at=_at(0))

        assert [n.transition for n in notes] == ["opened"]
        [stored] = storage.by_status(AlertStatus.active)
        assert stored.rule_id == "temperature_high"
        assert stored.severity == AlertSeverity.critical
        assert notifier.transitions() == ["opened"]
        assert notes[0].idempotency_key == f"{stored.alert_id}:opened"

    @pytest.mark.asyncio
    async def test_repeat_firing_refreshes_without_notifying(self, sink, storage, notifier):
        await sink.process("eq-1", [_firing(value=85)], at=_at(0))
        notes = await sink.process("eq-1", [_firing(value=86)], at=_at(1))

        assert notes == []
        assert len(storage.alerts) == 1
        alert = sink.get("eq-1", "temperature_high")
        assert alert.last_seen_at == _at(1)
        assert alert.value == 86
        assert notifier.transitions() == ["opened"]

    @pytest.mark.asyncio
    async def test_last_seen_never_moves_backwards(self, sink):
        await sink.process("eq-1", [_firing()], at=_at(10))
        await sink.process("eq-1", [_firing()], at=_at(5))
        assert sink.get("eq-1", "temperature_high").last_seen_at == _at(10)

    @pytest.mark.asyncio
    async def test_resolves_after_hysteresis(self, sink, storage, notifier):
        await sink.process("eq-1", [_firing()], at=_at(0))
        assert await sink.process("eq-1", [], at=_at(1)) == []
        assert await sink.process("eq-1", [], at=_at(2)) == []
        notes = await sink.process("eq-1", [], at=_at(3))

        assert [n.transition for n in notes] == ["resolved"]
        [stored] = storage.alerts.values()
        assert stored.status == AlertStatus.resolved
        assert stored.resolved_at == _at(3)
        assert sink.get("eq-1", "temperature_high") is None
        assert sink.open_alerts() == []

    @pytest.mark.asyncio
    async def test_alternating_never_resolves(self, sink, storage, notifier):
        for i in range(10):
            firings = [_firing()] if i % 2 == 0 else []
            await sink.process("eq-1", firings, at=_at(i))

        assert len(storage.alerts) == 1
        assert storage.by_status(AlertStatus.resolved) == []
        assert notifier.transitions() == ["opened"]

    @pytest.mark.asyncio
    async def test_firing_after_resolve_opens_new_record(self, sink, storage):
        await sink.process("eq-1", [_firing()], at=_at(0))
        for i in range(1, 4):
            await sink.process("eq-1", [], at=_at(i))
        await sink.process("eq-1", [_firing()], at=_at(4))

        assert len(storage.alerts) == 2
        assert len(storage.by_status(AlertStatus.resolved)) == 1
        assert len(storage.by_status(AlertStatus.active)) == 1

    @pytest.mark.asyncio
    async def test_escalation_keeps_record(self, sink, storage, notifier):
        await sink.process(
            "eq-1", [_firing(severity=AlertSeverity.warning, value=75)], at=_at(0),
        )
        notes = await sink.process("eq-1", [_firing(value=85)], at=_at(1))

        assert [n.transition for n in notes] == ["escalated"]
        [stored] = storage.alerts.values()
        assert stored.severity == AlertSeverity.critical
        assert "85" in stored.message

    @pytest.mark.asyncio
    async def test_no_downgrade(self, sink, storage, notifier):
        await sink.process("eq-1", [_firing()], at=_at(0))
        notes = await sink.process(
            "eq-1", [_firing(severity=AlertSeverity.warning, value=75)], at=_at(1),
        )
        assert notes == []
        assert sink.get("eq-1", "temperature_high").severity == AlertSeverity.critical

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, sink):
        await sink.process("eq-1", [_firing()], at=_at(0))
        await sink.process("eq-2", [_firing()], at=_at(0))
        await sink.process("eq-1", [_firing(rule_id="pressure_range")], at=_at(1))

        assert len(sink.open_alerts()) == 3
        assert {a.rule_id for a in sink.open_alerts("eq-1")} == {
            "temperature_high", "pressure_range",
        }
        assert sink.get("eq-1", "temperature_high").clear_streak == 1
        assert sink.get("eq-2", "temperature_high").clear_streak == 0

    @pytest.mark.asyncio
    async def test_replayed_evaluation_is_idempotent(self, sink, storage, notifier):
        await sink.process("eq-1", [_firing()], at=_at(0), evaluation_id=1)
        await sink.process("eq-1", [], at=_at(1), evaluation_id=2)
        await sink.process("eq-1", [], at=_at(1), evaluation_id=2)

        assert sink.get("eq-1", "temperature_high").clear_streak == 1
        assert len(storage.alerts) == 1
        assert notifier.transitions() == ["opened"]

    @pytest.mark.asyncio
    async def test_retry_after_partial_failure(self, sink, storage, notifier):
        await sink.process("eq-1", [_firing(rule_id="a")], at=_at(0), evaluation_id=1)
        storage.fail["insert_alert"] = 1
        firings = [_firing(rule_id="a"), _firing(rule_id="b")]

        with pytest.raises(SinkUnavailable):
            await sink.process("eq-1", firings, at=_at(1), evaluation_id=2)
        await sink.process("eq-1", firings, at=_at(1), evaluation_id=2)

        assert {a.rule_id for a in storage.by_status(AlertStatus.active)} == {"a", "b"}
        assert notifier.transitions() == ["opened", "opened"]

    @pytest.mark.asyncio
    async def test_conflict_adopts_stored_alert(self, storage, notifier):
        other = AlertSink(storage, RecordingNotifier())
        await other.process("eq-1", [_firing()], at=_at(0))
        [existing] = storage.alerts.values()

        sink = AlertSink(storage, notifier)
        notes = await sink.process("eq-1", [_firing()], at=_at(1))

        assert notes == []
        assert len(storage.alerts) == 1
        assert sink.get("eq-1", "temperature_high").alert_id == existing.alert_id
        assert storage.alerts[existing.alert_id].last_seen_at == _at(1)

    @pytest.mark.asyncio
    async def test_load_active_restores_mirror(self, storage, notifier):
        first = AlertSink(storage, notifier)
        await first.process("eq-1", [_firing()], at=_at(0))

        restarted = AlertSink(storage, notifier)
        assert await restarted.load_active() == 1
        notes = await restarted.process("eq-1", [_firing()], at=_at(1))
        assert notes == []
        assert len(storage.alerts) == 1

    @pytest.mark.asyncio
    async def test_acknowledge(self, sink, storage, notifier):
        await sink.process("eq-1", [_firing()], at=_at(0))
        alert = await sink.acknowledge("eq-1", "temperature_high", "operator", _at(1))

        assert alert.status == AlertStatus.acknowledged
        assert storage.alerts[alert.alert_id].status == AlertStatus.acknowledged
        assert notifier.transitions() == ["opened", "acknowledged"]

        again = await sink.acknowledge("eq-1", "temperature_high", "operator", _at(2))
        assert again is alert
        assert notifier.transitions() == ["opened", "acknowledged"]

    @pytest.mark.asyncio
    async def test_acknowledged_alert_still_resolves(self, sink, storage):
        await sink.process("eq-1", [_firing()], at=_at(0))
        await sink.acknowledge("eq-1", "temperature_high", "operator", _at(1))
        for i in range(2, 5):
            await sink.process("eq-1", [], at=_at(i))
        assert storage.by_status(AlertStatus.resolved)

    @pytest.mark.asyncio
    async def test_resolve_wins_over_concurrent_acknowledge(self, sink, storage, notifier):
        await sink.process("eq-1", [_firing()], at=_at(0), evaluation_id=1)
        for i in (2, 3):
            await sink.process("eq-1", [], at=_at(i), evaluation_id=i)
        [stored] = storage.alerts.values()

        _, acked = await asyncio.gather(
            sink.process("eq-1", [], at=_at(4), evaluation_id=4),
            sink.acknowledge("eq-1", "temperature_high", "operator", _at(4)),
        )

        assert acked is None
        assert stored.status == AlertStatus.resolved
        assert stored.resolved_at == _at(4)
        assert sink.get("eq-1", "temperature_high") is None
        assert await storage.load_active() == []
        assert notifier.transitions() == ["opened", "resolved"]

    @pytest.mark.asyncio
    async def test_acknowledge_landing_first_still_resolves(self, sink, storage, notifier):
        await sink.process("eq-1", [_firing()], at=_at(0), evaluation_id=1)
        for i in (2, 3):
            await sink.process("eq-1", [], at=_at(i), evaluation_id=i)
        [stored] = storage.alerts.values()

        acked, _ = await asyncio.gather(
            sink.acknowledge("eq-1", "temperature_high", "operator", _at(4)),
            sink.process("eq-1", [], at=_at(4), evaluation_id=4),
        )

        assert acked.status == AlertStatus.resolved
        assert stored.status == AlertStatus.resolved
        assert notifier.transitions() == ["opened", "acknowledged", "resolved"]

    @pytest.mark.asyncio
    async def test_acknowledge_unknown(self, sink):
        assert await sink.acknowledge("eq-1", "nope", "operator", _at(0)) is None

    def test_hysteresis_must_be_positive(self, storage, notifier):
        with pytest.raises(ValueError):
            AlertSink(storage, notifier, hysteresis=0)

    def test_notification_payload(self):
        alert = ActiveAlert(
            alert_id="a-1", equipment_id="eq-1", rule_id="r", severity=AlertSeverity.info,
            status=AlertStatus.active, title="t", message="m",
            opened_at=_at(0), last_seen_at=_at(0), value=1.5,
        )
        data = AlertNotification.of(alert, "opened", _at(0)).to_dict()
        assert data["key"] == "a-1:opened"
        assert data["severity"] == "info"
        assert data["at"] == _at(0).isoformat()
