"""SQL storage for reading history and alert records.

Database errors surface as SinkUnavailable (transient, retried by the
coordinator). A unique violation on insert_alert means an active alert for
the key already exists and surfaces as AlertConflict.

Timestamps are stored as naive UTC; columns are TIMESTAMP WITHOUT TIME ZONE.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import AlertConflict, SinkUnavailable
from models.alert import Alert, AlertSeverity, AlertStatus
from models.sensor_reading import SensorReading
from services.alert_sink import ActiveAlert
from services.reading import METRIC_NAMES, Reading

logger = logging.getLogger("telemetry.storage")

# asyncio.TimeoutError is not an OSError before 3.11
DB_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def _naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _aware(ts: datetime | None) -> datetime | None:
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class SqlTelemetryStorage:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------
    async def upsert_reading(self, reading: Reading) -> None:
        row = SensorReading(
            id=reading.reading_id,
            equipment_id=reading.equipment_id,
            timestamp=_naive_utc(reading.timestamp),
            additional_metrics=dict(reading.extra) or None,
            **{m: reading.metrics.get(m) for m in METRIC_NAMES},
        )
        try:
            async with self.session_factory() as session:
                await session.merge(row)
                await session.commit()
        except DB_ERRORS as exc:
            raise SinkUnavailable(
                f"reading upsert failed: {exc}",
                equipment_id=reading.equipment_id, reading_id=reading.reading_id,
            )

    async def recent_readings(self, equipment_id: str, limit: int) -> list[Reading]:
        """Last *limit* readings for the equipment, oldest first."""
        stmt = (
            select(SensorReading)
            .where(SensorReading.equipment_id == equipment_id)
            .order_by(SensorReading.timestamp.desc())
            .limit(limit)
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except DB_ERRORS as exc:
            raise SinkUnavailable(f"reading history failed: {exc}", equipment_id=equipment_id)
        return [self._to_reading(row) for row in reversed(rows)]

    @staticmethod
    def _to_reading(row: SensorReading) -> Reading:
        return Reading(
            reading_id=row.id,
            equipment_id=row.equipment_id,
            timestamp=_aware(row.timestamp),
            metrics={m: getattr(row, m) for m in METRIC_NAMES if getattr(row, m) is not None},
            extra=row.additional_metrics or {},
        )

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------
    async def insert_alert(self, alert: ActiveAlert) -> None:
        row = Alert(
            id=alert.alert_id,
            equipment_id=alert.equipment_id,
            rule_id=alert.rule_id,
            severity=alert.severity,
            status=alert.status,
            title=alert.title,
            message=alert.message,
            details={"value": alert.value, "threshold": alert.threshold},
            opened_at=_naive_utc(alert.opened_at),
            last_seen_at=_naive_utc(alert.last_seen_at),
        )
        try:
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
        except IntegrityError as exc:
            raise AlertConflict(
                f"active alert already stored: {exc.orig}",
                equipment_id=alert.equipment_id, rule_id=alert.rule_id,
            )
        except DB_ERRORS as exc:
            raise SinkUnavailable(
                f"alert insert failed: {exc}",
                equipment_id=alert.equipment_id, rule_id=alert.rule_id,
            )

    async def touch_alert(
        self,
        alert_id: str,
        *,
        last_seen_at: datetime,
        severity: AlertSeverity | None = None,
        message: str | None = None,
    ) -> None:
        values: dict = {"last_seen_at": _naive_utc(last_seen_at)}
        if severity is not None:
            values["severity"] = severity
        if message is not None:
            values["message"] = message
        await self._update(alert_id, values, Alert.status != AlertStatus.resolved)

    async def transition_alert(
        self, alert_id: str, status: AlertStatus, at: datetime, *, by: str | None = None,
    ) -> bool:
        """Move a stored alert to *status*; False when its current status forbids it.

        Resolved rows never change again and only active rows can be
        acknowledged.
        """
        values: dict = {"status": status}
        guard = Alert.status != AlertStatus.resolved
        if status == AlertStatus.resolved:
            values["resolved_at"] = _naive_utc(at)
        elif status == AlertStatus.acknowledged:
            values["acknowledged_at"] = _naive_utc(at)
            values["acknowledged_by"] = by
            guard = Alert.status == AlertStatus.active
        return await self._update(alert_id, values, guard)

    async def _update(self, alert_id: str, values: dict, guard) -> bool:
        stmt = update(Alert).where(Alert.id == alert_id, guard).values(**values)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except DB_ERRORS as exc:
            raise SinkUnavailable(f"alert update failed: {exc}", alert_id=alert_id)
        return result.rowcount > 0

    async def find_active(self, equipment_id: str, rule_id: str) -> ActiveAlert | None:
        stmt = select(Alert).where(
            and_(
                Alert.equipment_id == equipment_id,
                Alert.rule_id == rule_id,
                Alert.status == AlertStatus.active,
            )
        )
        try:
            async with self.session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
        except DB_ERRORS as exc:
            raise SinkUnavailable(f"alert lookup failed: {exc}", equipment_id=equipment_id)
        return self._to_alert(row) if row else None

    async def load_active(self) -> list[ActiveAlert]:
        stmt = select(Alert).where(
            Alert.status.in_([AlertStatus.active, AlertStatus.acknowledged])
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except DB_ERRORS as exc:
            raise SinkUnavailable(f"loading active alerts failed: {exc}")
        return [self._to_alert(row) for row in rows]

    @staticmethod
    def _to_alert(row: Alert) -> ActiveAlert:
        details = row.details or {}
        return ActiveAlert(
            alert_id=row.id,
            equipment_id=row.equipment_id,
            rule_id=row.rule_id,
            severity=row.severity,
            status=row.status,
            title=row.title,
            message=row.message,
            opened_at=_aware(row.opened_at),
            last_seen_at=_aware(row.last_seen_at),
            value=details.get("value"),
            threshold=details.get("threshold"),
            resolved_at=_aware(row.resolved_at),
        )
