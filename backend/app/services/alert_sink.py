"""Alert De-duplication & Sink — per (equipment, rule) alert state machine.

    Idle ──fire──▶ Active ──fire──▶ Active (last-seen bumped, maybe escalated)
                     │
                     └── H consecutive evaluations without firing ──▶ Resolved

Resolved is terminal for that occurrence; the next firing opens a new record.
The sink keeps an in-memory mirror of open alerts. `process` is only called
from the equipment's own coordinator lane; `acknowledge` comes from the HTTP
side, and storage refuses to change a resolved row.

Notifications are fire-and-forget; consumers de-duplicate on
``{alert_id}:{transition}``.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol

from redis.asyncio import Redis

from core.errors import AlertConflict, SinkUnavailable
from models.alert import AlertSeverity, AlertStatus
from services.reading import Reading
from services.rule_evaluator import SEVERITY_RANK, RuleFiring

logger = logging.getLogger("telemetry.alert_sink")


@dataclass
class ActiveAlert:
    alert_id: str
    equipment_id: str
    rule_id: str
    severity: AlertSeverity
    status: AlertStatus
    title: str
    message: str
    opened_at: datetime
    last_seen_at: datetime
    value: float | None = None
    threshold: float | None = None
    resolved_at: datetime | None = None
    clear_streak: int = 0
    last_evaluation: int | None = None


@dataclass(frozen=True)
class AlertNotification:
    transition: str     # opened | escalated | resolved | acknowledged
    alert_id: str
    equipment_id: str
    rule_id: str
    severity: AlertSeverity
    title: str
    message: str
    at: datetime
    value: float | None = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.alert_id}:{self.transition}"

    @classmethod
    def of(cls, alert: ActiveAlert, transition: str, at: datetime) -> AlertNotification:
        return cls(
            transition=transition,
            alert_id=alert.alert_id,
            equipment_id=alert.equipment_id,
            rule_id=alert.rule_id,
            severity=alert.severity,
            title=alert.title,
            message=alert.message,
            at=at,
            value=alert.value,
        )

    def to_dict(self) -> dict:
        return {
            "key": self.idempotency_key,
            "transition": self.transition,
            "alert_id": self.alert_id,
            "equipment_id": self.equipment_id,
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "value": self.value,
            "at": self.at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class AlertStorage(Protocol):
    async def upsert_reading(self, reading: Reading) -> None: ...
    async def recent_readings(self, equipment_id: str, limit: int) -> list[Reading]: ...
    async def insert_alert(self, alert: ActiveAlert) -> None: ...
    async def touch_alert(
        self, alert_id: str, *, last_seen_at: datetime,
        severity: AlertSeverity | None = None, message: str | None = None,
    ) -> None: ...
    async def transition_alert(
        self, alert_id: str, status: AlertStatus, at: datetime, *, by: str | None = None,
    ) -> bool: ...
    async def find_active(self, equipment_id: str, rule_id: str) -> ActiveAlert | None: ...
    async def load_active(self) -> list[ActiveAlert]: ...


class Notifier(Protocol):
    async def notify(self, notification: AlertNotification) -> None: ...


class RedisNotifier:
    """Publishes alert transitions on a Redis channel."""

    def __init__(self, redis: Redis, channel: str):
        self.redis = redis
        self.channel = channel

    async def notify(self, notification: AlertNotification) -> None:
        try:
            await self.redis.publish(self.channel, json.dumps(notification.to_dict(), default=str))
        except Exception as exc:
            logger.warning(
                "Notification publish failed (%s): %s", notification.idempotency_key, exc,
            )


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------

class AlertSink:

    def __init__(self, storage: AlertStorage, notifier: Notifier, *, hysteresis: int = 3):
        if hysteresis < 1:
            raise ValueError("hysteresis must be >= 1")
        self.storage = storage
        self.notifier = notifier
        self.hysteresis = hysteresis
        # equipment_id → rule_id → open alert
        self._open: dict[str, dict[str, ActiveAlert]] = {}

    async def load_active(self) -> int:
        """Rebuild the open-alert mirror from storage after a restart."""
        alerts = await self.storage.load_active()
        for alert in alerts:
            self._open.setdefault(alert.equipment_id, {})[alert.rule_id] = alert
        return len(alerts)

    def get(self, equipment_id: str, rule_id: str) -> ActiveAlert | None:
        return self._open.get(equipment_id, {}).get(rule_id)

    def open_alerts(self, equipment_id: str | None = None) -> list[ActiveAlert]:
        if equipment_id is not None:
            return list(self._open.get(equipment_id, {}).values())
        return [a for by_rule in self._open.values() for a in by_rule.values()]

    # ------------------------------------------------------------------
    async def process(
        self,
        equipment_id: str,
        firings: Iterable[RuleFiring],
        *,
        at: datetime,
        evaluation_id: int | None = None,
    ) -> list[AlertNotification]:
        """Apply one evaluation's firings; returns the transitions it caused.

        Re-running the same ``evaluation_id`` (a retried stage) leaves keys
        that were already applied untouched.
        """
        fired = {f.rule_id: f for f in firings}
        notes: list[AlertNotification] = []

        for rule_id in sorted(fired):
            current = self.get(equipment_id, rule_id)
            if current is None:
                note = await self._open_alert(equipment_id, fired[rule_id], at, evaluation_id)
            elif evaluation_id is not None and current.last_evaluation == evaluation_id:
                continue
            else:
                note = await self._refresh(current, fired[rule_id], at, evaluation_id)
            if note:
                notes.append(note)

        for alert in list(self._open.get(equipment_id, {}).values()):
            if alert.rule_id in fired:
                continue
            if evaluation_id is not None and alert.last_evaluation == evaluation_id:
                continue
            note = await self._clear(alert, at, evaluation_id)
            if note:
                notes.append(note)
        return notes

    async def acknowledge(
        self, equipment_id: str, rule_id: str, by: str, at: datetime,
    ) -> ActiveAlert | None:
        """Mark the open alert acknowledged; None when there is none.

        Runs outside the equipment lane, so a resolve may land while the
        storage write is in flight; resolved wins.
        """
        alert = self.get(equipment_id, rule_id)
        if alert is None or alert.status == AlertStatus.acknowledged:
            return alert
        stored = await self.storage.transition_alert(
            alert.alert_id, AlertStatus.acknowledged, at, by=by,
        )
        if not stored or self.get(equipment_id, rule_id) is not alert:
            logger.info(
                "ALERT ACK skipped: equipment=%s rule=%s resolved meanwhile", equipment_id, rule_id,
            )
            return None
        alert.status = AlertStatus.acknowledged
        logger.info("ALERT ACK: equipment=%s rule=%s by=%s", equipment_id, rule_id, by)
        await self._emit(AlertNotification.of(alert, "acknowledged", at))
        return alert

    # ------------------------------------------------------------------
    async def _open_alert(
        self, equipment_id: str, firing: RuleFiring, at: datetime, evaluation_id: int | None,
    ) -> AlertNotification | None:
        alert = ActiveAlert(
            alert_id=str(uuid.uuid4()),
            equipment_id=equipment_id,
            rule_id=firing.rule_id,
            severity=firing.severity,
            status=AlertStatus.active,
            title=firing.title,
            message=firing.message,
            opened_at=at,
            last_seen_at=at,
            value=firing.value,
            threshold=firing.threshold,
            last_evaluation=evaluation_id,
        )
        try:
            await self.storage.insert_alert(alert)
        except AlertConflict:
            # another process opened it first; adopt the stored record
            existing = await self.storage.find_active(equipment_id, firing.rule_id)
            if existing is None:
                raise SinkUnavailable(
                    "active alert conflict without a stored active alert",
                    equipment_id=equipment_id, rule_id=firing.rule_id,
                )
            logger.warning(
                "ALERT ADOPT: equipment=%s rule=%s alert=%s",
                equipment_id, firing.rule_id, existing.alert_id,
            )
            self._open.setdefault(equipment_id, {})[firing.rule_id] = existing
            return await self._refresh(existing, firing, at, evaluation_id)

        self._open.setdefault(equipment_id, {})[firing.rule_id] = alert
        logger.info(
            "ALERT OPEN: equipment=%s rule=%s severity=%s value=%s",
            equipment_id, firing.rule_id, firing.severity.value, firing.value,
        )
        note = AlertNotification.of(alert, "opened", at)
        await self._emit(note)
        return note

    async def _refresh(
        self, alert: ActiveAlert, firing: RuleFiring, at: datetime, evaluation_id: int | None,
    ) -> AlertNotification | None:
        escalate = SEVERITY_RANK[firing.severity] > SEVERITY_RANK[alert.severity]
        last_seen = max(alert.last_seen_at, at)
        await self.storage.touch_alert(
            alert.alert_id,
            last_seen_at=last_seen,
            severity=firing.severity if escalate else None,
            message=firing.message if escalate else None,
        )
        alert.last_seen_at = last_seen
        alert.value = firing.value
        alert.clear_streak = 0
        alert.last_evaluation = evaluation_id
        if not escalate:
            return None
        alert.severity = firing.severity
        alert.message = firing.message
        alert.threshold = firing.threshold
        logger.info(
            "ALERT ESCALATE: equipment=%s rule=%s severity=%s",
            alert.equipment_id, alert.rule_id, firing.severity.value,
        )
        note = AlertNotification.of(alert, "escalated", at)
        await self._emit(note)
        return note

    async def _clear(
        self, alert: ActiveAlert, at: datetime, evaluation_id: int | None,
    ) -> AlertNotification | None:
        streak = alert.clear_streak + 1
        if streak < self.hysteresis:
            alert.clear_streak = streak
            alert.last_evaluation = evaluation_id
            return None

        await self.storage.transition_alert(alert.alert_id, AlertStatus.resolved, at)
        alert.clear_streak = streak
        alert.last_evaluation = evaluation_id
        alert.status = AlertStatus.resolved
        alert.resolved_at = at
        by_rule = self._open.get(alert.equipment_id, {})
        by_rule.pop(alert.rule_id, None)
        if not by_rule:
            self._open.pop(alert.equipment_id, None)
        logger.info(
            "ALERT RESOLVED: equipment=%s rule=%s after %d clear evaluations",
            alert.equipment_id, alert.rule_id, streak,
        )
        note = AlertNotification.of(alert, "resolved", at)
        await self._emit(note)
        return note

    async def _emit(self, note: AlertNotification) -> None:
        await self.notifier.notify(note)
