"""
Alert fan-out to dashboards.

WS /ws/alerts        — snapshot of open alerts on connect, then live transitions
alerts_to_ws_bridge  — background task: Redis 'alerts:notifications' → all clients
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.asyncio import Redis

logger = logging.getLogger("telemetry.websocket")

router = APIRouter()


def alert_view(alert) -> dict:
    return {
        "alert_id": alert.alert_id,
        "equipment_id": alert.equipment_id,
        "rule_id": alert.rule_id,
        "severity": alert.severity.value,
        "status": alert.status.value,
        "title": alert.title,
        "message": alert.message,
        "last_seen_at": alert.last_seen_at.isoformat(),
    }


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------

class AlertSubscribers:
    """Dashboard sockets receiving alert transitions."""

    def __init__(self) -> None:
        self._sockets: set[WebSocket] = set()

    def __len__(self) -> int:
        return len(self._sockets)

    async def join(self, ws: WebSocket, snapshot: list[dict]) -> None:
        await ws.accept()
        await ws.send_json({"type": "snapshot", "data": snapshot})
        self._sockets.add(ws)
        logger.info("Alert subscriber joined (%d total)", len(self._sockets))

    def leave(self, ws: WebSocket) -> None:
        self._sockets.discard(ws)
        logger.info("Alert subscriber left (%d remaining)", len(self._sockets))

    async def publish(self, message: str) -> None:
        sockets = list(self._sockets)
        results = await asyncio.gather(
            *(ws.send_text(message) for ws in sockets), return_exceptions=True,
        )
        dead = [ws for ws, res in zip(sockets, results) if isinstance(res, Exception)]
        for ws in dead:
            self._sockets.discard(ws)
        if dead:
            logger.debug("Dropped %d dead alert subscribers", len(dead))


subscribers = AlertSubscribers()


# ---------------------------------------------------------------------------
# WebSocket Endpoint
# ---------------------------------------------------------------------------

@router.websocket("/ws/alerts")
async def ws_alerts(websocket: WebSocket) -> None:
    sink = websocket.app.state.alert_sink
    try:
        await subscribers.join(websocket, [alert_view(a) for a in sink.open_alerts()])
        while True:
            if await websocket.receive_text() == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.debug("Alert WS error: %s", exc)
    finally:
        subscribers.leave(websocket)


# ---------------------------------------------------------------------------
# Redis → WebSocket Bridge (background task)
# ---------------------------------------------------------------------------

async def alerts_to_ws_bridge(redis: Redis, channel: str) -> None:
    """Relay every alert notification published on *channel*."""
    logger.info("Alert bridge subscribing to %s", channel)
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)

    try:
        async for message in pubsub.listen():
            if message["type"] != "message":
                continue
            payload = message["data"]
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8")
            await subscribers.publish(payload)
    except Exception as exc:
        logger.error("Alert bridge error: %s", exc)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
