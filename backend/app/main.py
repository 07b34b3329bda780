import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from config import settings
from models import async_session, engine
from api.status import router as status_router
from core.diagnostics import Diagnostics
from core.websocket import router as ws_router, alerts_to_ws_bridge
from services.alert_sink import AlertSink, RedisNotifier
from services.coordinator import DeliveryCoordinator
from services.ingress import EventIngress
from services.registry import EquipmentRegistry, SqlProfileSource
from services.rolling_state import RollingStateStore
from services.rule_evaluator import load_rules
from services.storage import SqlTelemetryStorage

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("telemetry.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Telemetry pipeline starting... DEBUG=%s", settings.DEBUG)

    # RuleConfigError here aborts startup
    rules = load_rules(settings.RULES_FILE)
    app.state.rules = rules

    # Redis
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
    app.state.redis = redis
    logger.info("Redis connected: %s", settings.REDIS_URL)

    diagnostics = Diagnostics()
    app.state.diagnostics = diagnostics

    registry = EquipmentRegistry(SqlProfileSource(async_session))
    app.state.registry = registry

    store = RollingStateStore(
        capacity=settings.ROLLING_WINDOW_SIZE,
        recompute_every=settings.ROLLING_RECOMPUTE_EVERY,
    )
    app.state.rolling_store = store

    storage = SqlTelemetryStorage(async_session)
    app.state.storage = storage
    sink = AlertSink(
        storage,
        RedisNotifier(redis, settings.CHANNEL_ALERTS),
        hysteresis=settings.ALERT_HYSTERESIS,
    )
    restored = await sink.load_active()
    logger.info("Restored %d open alerts", restored)
    app.state.alert_sink = sink

    coordinator = DeliveryCoordinator(
        registry, store, sink, storage, diagnostics,
        rules=rules,
        lanes=settings.LANE_COUNT,
        lane_capacity=settings.LANE_CAPACITY,
        retry_attempts=settings.RETRY_ATTEMPTS,
        retry_base_delay=settings.RETRY_BASE_DELAY,
    )
    app.state.coordinator = coordinator
    await coordinator.start()

    ingress = EventIngress(
        redis, coordinator, diagnostics,
        metric_types=settings.SENSOR_METRIC_TYPES,
        coalesce_window=settings.COALESCE_WINDOW,
        reconnect_delay=settings.INGRESS_RECONNECT_DELAY,
    )
    app.state.ingress = ingress
    ingress_task = asyncio.create_task(ingress.start())

    # Equipment change feed → registry invalidation
    registry_task = asyncio.create_task(
        registry.listen(redis, settings.CHANNEL_EQUIPMENT_UPDATES)
    )

    # Alert notifications → WebSocket bridge
    ws_bridge_task = asyncio.create_task(alerts_to_ws_bridge(redis, settings.CHANNEL_ALERTS))

    yield

    # Shutdown: stop intake first, flush coalesced readings, then drain lanes
    logger.info("Telemetry pipeline shutting down...")
    registry.stop()
    ingress_task.cancel()
    try:
        await ingress_task
    except asyncio.CancelledError:
        pass
    await ingress.stop()
    await coordinator.stop(timeout=settings.SHUTDOWN_TIMEOUT)

    for t in (registry_task, ws_bridge_task):
        t.cancel()
    for t in (registry_task, ws_bridge_task):
        try:
            await t
        except asyncio.CancelledError:
            pass

    await redis.aclose()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Equipment Telemetry Pipeline",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(status_router)
app.include_router(ws_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": "0.1.0"}
