"""HTTP and WebSocket surface tests with FastAPI's TestClient."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.status import router as status_router
from conftest import (
    FakeProfileSource,
    InMemoryStorage,
    RecordingNotifier,
    make_profile,
    make_reading,
)
from core.diagnostics import Diagnostics
from core.websocket import AlertSubscribers, alerts_to_ws_bridge, subscribers
from core.websocket import router as ws_router
from services.alert_sink import AlertSink
from services.coordinator import DeliveryCoordinator
from services.ingress import EventIngress
from services.registry import EquipmentRegistry
from services.rolling_state import RollingStateStore


@pytest.fixture
def app():
    diagnostics = Diagnostics()
    storage = InMemoryStorage(history={
        "eq-2": [
            make_reading("eq-2", seconds=0, temperature=70, pressure=50),
            make_reading("eq-2", seconds=1, temperature=85, pressure=50),
        ],
    })
    serviced = datetime.now(timezone.utc) - timedelta(days=120)
    registry = EquipmentRegistry(FakeProfileSource(
        make_profile("eq-1"),
        make_profile("eq-2", last_maintenance_at=serviced),
        make_profile("eq-3"),
    ))
    store = RollingStateStore()
    sink = AlertSink(storage, RecordingNotifier())
    coordinator = DeliveryCoordinator(registry, store, sink, storage, diagnostics, lanes=2)

    app = FastAPI()
    app.include_router(status_router)
    app.include_router(ws_router)
    app.state.diagnostics = diagnostics
    app.state.storage = storage
    app.state.registry = registry
    app.state.rolling_store = store
    app.state.alert_sink = sink
    app.state.coordinator = coordinator
    app.state.ingress = EventIngress(None, coordinator, diagnostics, coalesce_window=0)

    asyncio.run(coordinator.process(make_reading(temperature=95, pressure=50)))
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


class TestStatusApi:

    def test_pipeline_status(self, client):
        body = client.get("/api/pipeline/status").json()
        assert body["ingress"] == "disconnected"
        assert body["accepting"] is False
        assert body["lanes"] == [0, 0]
        assert body["counters"]["processed"] == 1
        assert body["open_alerts"] == 1
        assert body["tracked_equipment"] == 1

    def test_equipment_health(self, client):
        body = client.get("/api/equipment/eq-1/health").json()
        assert body["health_score"] == 80
        assert body["latest"] == {"temperature": 95, "pressure": 50}
        assert body["window"] == 1
        [alert] = body["active_alerts"]
        assert alert["rule_id"] == "temperature_high"
        assert alert["severity"] == "critical"
        assert body["recommendations"] == []
        assert body["source"] == "window"
        assert body["days_since_maintenance"] is None

    def test_health_from_stored_history(self, client, app):
        body = client.get("/api/equipment/eq-2/health").json()
        assert body["source"] == "history"
        assert body["window"] == 2
        assert body["latest"] == {"temperature": 85, "pressure": 50}
        assert body["mean"]["temperature"] == pytest.approx(77.5)
        assert body["health_score"] == 80
        assert not app.state.rolling_store.has("eq-2")

    def test_overdue_maintenance_recommended(self, client):
        body = client.get("/api/equipment/eq-2/health").json()
        assert body["days_since_maintenance"] == 120
        [rec] = body["recommendations"]
        assert rec["action"] == "Schedule routine maintenance"
        assert rec["reason"] == "120 days since last maintenance"

    def test_health_without_any_readings(self, client):
        body = client.get("/api/equipment/eq-3/health").json()
        assert body["health_score"] == 50
        assert body["source"] is None
        assert body["latest"] == {}

    def test_health_history_outage(self, client, app):
        app.state.storage.fail["recent_readings"] = 1
        assert client.get("/api/equipment/eq-2/health").status_code == 503

    def test_health_unknown_equipment(self, client):
        assert client.get("/api/equipment/eq-404/health").status_code == 404

    def test_acknowledge(self, client, app):
        resp = client.post(
            "/api/equipment/eq-1/alerts/temperature_high/acknowledge",
            json={"acknowledged_by": "operator"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "acknowledged"
        assert app.state.alert_sink.get("eq-1", "temperature_high").status.value == "acknowledged"

    def test_acknowledge_without_alert(self, client):
        resp = client.post(
            "/api/equipment/eq-1/alerts/pressure_range/acknowledge",
            json={"acknowledged_by": "operator"},
        )
        assert resp.status_code == 404

    def test_acknowledge_requires_operator(self, client):
        resp = client.post("/api/equipment/eq-1/alerts/temperature_high/acknowledge", json={})
        assert resp.status_code == 422


class TestAlertsWebSocket:

    def test_snapshot_then_ping(self, client):
        with client.websocket_connect("/ws/alerts") as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert [a["rule_id"] for a in snapshot["data"]] == ["temperature_high"]
            ws.send_text("ping")
            assert ws.receive_text() == "pong"


class FakeSocket:

    def __init__(self, dead: bool = False):
        self.dead = dead
        self.sent: list[str] = []

    async def send_text(self, message: str) -> None:
        if self.dead:
            raise RuntimeError("socket closed")
        self.sent.append(message)


class FakeChannel:

    def __init__(self, messages):
        self.messages = messages
        self.closed = False

    async def subscribe(self, channel):
        pass

    async def unsubscribe(self, channel):
        pass

    async def listen(self):
        for msg in self.messages:
            yield msg

    async def aclose(self):
        self.closed = True


class TestAlertSubscribers:

    @pytest.mark.asyncio
    async def test_publish_drops_dead_sockets(self):
        subs = AlertSubscribers()
        good, dead = FakeSocket(), FakeSocket(dead=True)
        subs._sockets.update({good, dead})

        await subs.publish('{"key": "a-1:opened"}')
        assert good.sent == ['{"key": "a-1:opened"}']
        assert len(subs) == 1

    @pytest.mark.asyncio
    async def test_bridge_relays_notifications(self):
        channel = FakeChannel([
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": b'{"key": "a-1:resolved"}'},
        ])

        class FakeRedis:
            def pubsub(self):
                return channel

        socket = FakeSocket()
        subscribers._sockets.add(socket)
        try:
            await alerts_to_ws_bridge(FakeRedis(), "alerts:notifications")
        finally:
            subscribers._sockets.discard(socket)
        assert socket.sent == ['{"key": "a-1:resolved"}']
        assert channel.closed
