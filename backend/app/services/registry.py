"""Equipment Registry — cached, read-mostly equipment profiles.

Profiles are fetched from the system of record on cache miss and replaced
whole on refresh, so readers never see a half-updated threshold set.
Change notifications arrive on the Redis 'equipment:updates' channel; a
cached profile is re-fetched and swapped, or dropped when the source is down.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import RegistryUnavailable, UnknownEquipment
from models.equipment import Equipment, EquipmentStatus

logger = logging.getLogger("telemetry.registry")

DB_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class Thresholds:
    max_temperature: float = 80.0
    max_vibration: float = 10.0
    max_pressure: float = 100.0
    min_pressure: float = 10.0

    def get(self, name: str) -> float | None:
        return getattr(self, name, None)


@dataclass(frozen=True)
class EquipmentProfile:
    equipment_id: str
    name: str = ""
    status: EquipmentStatus = EquipmentStatus.active
    thresholds: Thresholds = field(default_factory=Thresholds)
    last_maintenance_at: datetime | None = None

    def days_since_maintenance(self, now: datetime) -> int | None:
        if self.last_maintenance_at is None:
            return None
        return (now - self.last_maintenance_at).days


class ProfileSource(Protocol):
    async def get_profile(self, equipment_id: str) -> EquipmentProfile | None: ...


class SqlProfileSource:
    """Reads profiles from the equipment table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_profile(self, equipment_id: str) -> EquipmentProfile | None:
        try:
            async with self.session_factory() as session:
                row = await session.get(Equipment, equipment_id)
        except DB_ERRORS as exc:
            raise RegistryUnavailable(f"equipment lookup failed: {exc}", equipment_id=equipment_id)
        if row is None:
            return None
        return EquipmentProfile(
            equipment_id=row.id,
            name=row.name,
            status=row.status,
            thresholds=Thresholds(
                max_temperature=row.max_temperature,
                max_vibration=row.max_vibration,
                max_pressure=row.max_pressure,
                min_pressure=row.min_pressure,
            ),
            last_maintenance_at=(
                row.last_maintenance_at.replace(tzinfo=timezone.utc)
                if row.last_maintenance_at is not None else None
            ),
        )


class EquipmentRegistry:

    def __init__(self, source: ProfileSource):
        self.source = source
        self._cache: dict[str, EquipmentProfile] = {}
        self._running = False

    def cached(self, equipment_id: str) -> EquipmentProfile | None:
        return self._cache.get(equipment_id)

    async def lookup(self, equipment_id: str) -> EquipmentProfile:
        profile = self._cache.get(equipment_id)
        if profile is not None:
            return profile
        profile = await self.source.get_profile(equipment_id)
        if profile is None:
            raise UnknownEquipment(
                f"equipment {equipment_id!r} not registered", equipment_id=equipment_id,
            )
        self._cache[equipment_id] = profile
        logger.debug("Registry cached profile %s", equipment_id)
        return profile

    def invalidate(self, equipment_id: str) -> None:
        if self._cache.pop(equipment_id, None) is not None:
            logger.info("Registry invalidated %s", equipment_id)

    async def refresh(self, equipment_id: str) -> EquipmentProfile | None:
        profile = await self.source.get_profile(equipment_id)
        if profile is None:
            self._cache.pop(equipment_id, None)
            logger.info("Registry dropped %s (no longer registered)", equipment_id)
        else:
            self._cache[equipment_id] = profile
            logger.info("Registry refreshed %s", equipment_id)
        return profile

    # ------------------------------------------------------------------
    async def listen(self, redis: Redis, channel: str) -> None:
        """Consume the change feed and refresh the named profiles."""
        self._running = True
        logger.info("Registry listening for equipment changes on %s", channel)
        while self._running:
            pubsub = redis.pubsub()
            try:
                await pubsub.subscribe(channel)
                async for msg in pubsub.listen():
                    if not self._running:
                        break
                    if msg["type"] != "message":
                        continue
                    await self.handle_update(msg["data"])
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Registry subscribe error: %s, retry in 2s", exc)
                await asyncio.sleep(2)
            finally:
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except Exception as exc:
                    logger.debug("Registry pubsub close error: %s", exc)

    def stop(self) -> None:
        self._running = False

    async def handle_update(self, raw: bytes | str) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Registry ignored non-JSON update: %r", raw[:200])
            return
        equipment_id = data.get("equipment_id") if isinstance(data, dict) else None
        if not equipment_id:
            logger.warning("Registry update without equipment_id: %r", data)
            return
        equipment_id = str(equipment_id)
        if self.cached(equipment_id) is None:
            return
        try:
            await self.refresh(equipment_id)
        except RegistryUnavailable as exc:
            logger.warning("Registry refresh of %s failed, invalidating: %s", equipment_id, exc)
            self.invalidate(equipment_id)
