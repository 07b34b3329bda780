"""Event Ingress — sensor messages from Redis PubSub into canonical readings.

Subscribes to channel patterns 'sensors/*/{metricType}'. Each message is
parsed into a Reading; readings for the same equipment arriving within the
coalescing window on different metrics are merged locally before they are
handed to the delivery coordinator.

Malformed messages are counted and dropped and never retried.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable

from redis.asyncio import Redis

from core.diagnostics import Diagnostics
from core.errors import MalformedPayload, PipelineError, UnknownMetricType
from services.reading import Reading

logger = logging.getLogger("telemetry.ingress")

TOPIC_PREFIX = "sensors"

# metric type (topic segment) → [(reading metric, payload keys tried in order)]
METRIC_FIELDS: dict[str, tuple[tuple[str, tuple[str, ...]], ...]] = {
    "temperature": (("temperature", ("value", "temperature")),),
    "vibration":   (("vibration", ("value", "vibration")),),
    "pressure":    (("pressure", ("value", "pressure")),),
    "humidity":    (("humidity", ("value", "humidity")),),
    "electrical":  (
        ("current", ("current",)),
        ("voltage", ("voltage",)),
        ("power", ("power",)),
    ),
    "performance": (("rpm", ("rpm",)),),
}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _number(raw: Any, key: str) -> float:
    if isinstance(raw, bool):
        raise MalformedPayload(f"field '{key}' is boolean", field=key)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise MalformedPayload(f"field '{key}' is not numeric: {raw!r}", field=key)
    if not math.isfinite(value):
        raise MalformedPayload(f"field '{key}' is not finite", field=key)
    return value


def _parse_timestamp(raw: Any, received_at: datetime) -> datetime:
    if raw is None:
        return received_at
    if not isinstance(raw, str):
        raise MalformedPayload(f"timestamp is not a string: {raw!r}")
    try:
        ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise MalformedPayload(f"invalid ISO-8601 timestamp: {raw!r}")
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def split_topic(topic: str) -> tuple[str, str]:
    """Return (equipment_id, metric_type) from 'sensors/{id}/{type}'."""
    parts = topic.split("/")
    if len(parts) != 3 or parts[0] != TOPIC_PREFIX or not parts[1] or not parts[2]:
        raise MalformedPayload(f"unexpected topic: {topic!r}", topic=topic)
    return parts[1], parts[2]


def parse_message(
    topic: str,
    payload: bytes | str,
    *,
    received_at: datetime | None = None,
    metric_types: frozenset[str] | None = None,
) -> Reading:
    """Decode one transport message into a Reading.

    Raises MalformedPayload or UnknownMetricType.
    """
    equipment_id, metric_type = split_topic(topic)
    supported = metric_types if metric_types is not None else frozenset(METRIC_FIELDS)
    if metric_type not in supported or metric_type not in METRIC_FIELDS:
        raise UnknownMetricType(
            f"unsupported metric type {metric_type!r}",
            equipment_id=equipment_id, topic=topic,
        )

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedPayload("payload is not UTF-8", equipment_id=equipment_id, topic=topic)
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise MalformedPayload(f"payload is not JSON: {exc}", equipment_id=equipment_id, topic=topic)
    if not isinstance(data, dict):
        raise MalformedPayload("payload is not an object", equipment_id=equipment_id, topic=topic)

    try:
        metrics: dict[str, float] = {}
        for metric, keys in METRIC_FIELDS[metric_type]:
            for key in keys:
                # explicit None check: 0 is a legitimate reading
                if data.get(key) is not None:
                    metrics[metric] = _number(data[key], key)
                    break

        extra: dict[str, Any] = {}
        if metric_type == "performance" and data.get("metrics") is not None:
            if not isinstance(data["metrics"], dict):
                raise MalformedPayload("field 'metrics' is not an object")
            extra = data["metrics"]

        if not metrics and not extra:
            raise MalformedPayload(f"no usable field for {metric_type}")

        timestamp = _parse_timestamp(
            data.get("timestamp"), received_at or datetime.now(timezone.utc)
        )
    except MalformedPayload as exc:
        exc.context.update(equipment_id=equipment_id, topic=topic)
        raise

    return Reading(
        equipment_id=equipment_id,
        timestamp=timestamp,
        metrics=metrics,
        extra=extra,
    )


# ---------------------------------------------------------------------------
# Coalescing
# ---------------------------------------------------------------------------

class ReadingCoalescer:
    """Holds at most one pending reading per equipment.

    A reading within ``window`` seconds of the pending one and carrying only
    metrics the pending one lacks is merged into it. Anything else releases
    the pending reading. Pending readings wait at most one window
    (receipt clock) before :meth:`expire` releases them.
    """

    def __init__(self, window: float):
        self.window = window
        self._pending: dict[str, tuple[Reading, float]] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, reading: Reading, now: float) -> list[Reading]:
        if self.window <= 0:
            return [reading]
        key = reading.equipment_id
        held = self._pending.get(key)
        if held is None:
            self._pending[key] = (reading, now)
            return []
        pending, since = held
        if self._can_merge(pending, reading):
            self._pending[key] = (pending.merged(reading), since)
            return []
        self._pending[key] = (reading, now)
        return [pending]

    def expire(self, now: float) -> list[Reading]:
        due = [k for k, (_, since) in self._pending.items() if now - since >= self.window]
        return [self._pending.pop(k)[0] for k in due]

    def flush(self) -> list[Reading]:
        ready = [reading for reading, _ in self._pending.values()]
        self._pending.clear()
        return ready

    def _can_merge(self, pending: Reading, reading: Reading) -> bool:
        gap = abs((reading.timestamp - pending.timestamp).total_seconds())
        if gap > self.window:
            return False
        return not (pending.metrics.keys() & reading.metrics.keys())


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------

class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


_ALLOWED = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED, ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.RECONNECTING: {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
}


# ---------------------------------------------------------------------------
# Ingress service
# ---------------------------------------------------------------------------

class EventIngress:

    def __init__(
        self,
        redis: Redis,
        coordinator,
        diagnostics: Diagnostics,
        *,
        metric_types: list[str] | None = None,
        coalesce_window: float = 5.0,
        reconnect_delay: float = 1.0,
    ):
        self.redis = redis
        self.coordinator = coordinator
        self.diagnostics = diagnostics
        self.metric_types = frozenset(metric_types or METRIC_FIELDS)
        self.patterns = [f"{TOPIC_PREFIX}/*/{t}" for t in sorted(self.metric_types)]
        self.coalescer = ReadingCoalescer(coalesce_window)
        self.reconnect_delay = reconnect_delay
        self._state = ConnectionState.DISCONNECTED
        self._listeners: list[Callable[[ConnectionState, ConnectionState], None]] = []
        self._running = False
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    def add_listener(self, callback: Callable[[ConnectionState, ConnectionState], None]) -> None:
        self._listeners.append(callback)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if new == old:
            return
        if new not in _ALLOWED[old]:
            raise ValueError(f"invalid connection transition {old.value} -> {new.value}")
        self._state = new
        logger.info("Ingress connection %s -> %s", old.value, new.value)
        for callback in self._listeners:
            try:
                callback(old, new)
            except Exception as exc:
                logger.error("Ingress state listener error: %s", exc)

    # ------------------------------------------------------------------
    async def start(self) -> None:
        self._running = True
        if self.coalescer.window > 0:
            self._sweeper = asyncio.create_task(self._sweep())
        logger.info(
            "EventIngress started (patterns=%s, coalesce=%.1fs)",
            ",".join(self.patterns), self.coalescer.window,
        )
        await self._subscribe()

    async def stop(self) -> None:
        self._running = False
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        for reading in self.coalescer.flush():
            self._dispatch(reading)
        if self._state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("EventIngress stopped")

    # ------------------------------------------------------------------
    def handle_message(
        self,
        topic: str,
        payload: bytes | str,
        *,
        received_at: datetime | None = None,
        now: float | None = None,
    ) -> None:
        """Parse, coalesce and dispatch one message. Never raises PipelineError."""
        try:
            reading = parse_message(
                topic, payload, received_at=received_at, metric_types=self.metric_types,
            )
        except PipelineError as exc:
            self.diagnostics.record(exc, stage="ingress")
            return
        self.diagnostics.incr("received")
        for ready in self.coalescer.add(reading, time.monotonic() if now is None else now):
            self._dispatch(ready)

    def _dispatch(self, reading: Reading) -> None:
        self.coordinator.submit(reading)

    async def _sweep(self) -> None:
        interval = max(self.coalescer.window / 5, 0.05)
        while self._running:
            await asyncio.sleep(interval)
            for reading in self.coalescer.expire(time.monotonic()):
                self._dispatch(reading)

    async def _subscribe(self) -> None:
        first = True
        while self._running:
            self._set_state(ConnectionState.CONNECTING if first else ConnectionState.RECONNECTING)
            first = False
            pubsub = self.redis.pubsub()
            try:
                await pubsub.psubscribe(*self.patterns)
                self._set_state(ConnectionState.CONNECTED)
                async for msg in pubsub.listen():
                    if not self._running:
                        break
                    if msg["type"] != "pmessage":
                        continue
                    channel = msg["channel"]
                    if isinstance(channel, bytes):
                        channel = channel.decode("utf-8", errors="replace")
                    self.handle_message(channel, msg["data"])
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error(
                    "Ingress subscribe error: %s, retry in %.1fs", exc, self.reconnect_delay,
                )
                await asyncio.sleep(self.reconnect_delay)
            finally:
                try:
                    await pubsub.punsubscribe()
                    await pubsub.aclose()
                except Exception as exc:
                    logger.debug("Ingress pubsub close error: %s", exc)
