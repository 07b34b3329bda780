"""
Pipeline status and alert acknowledgement.

GET /api/pipeline/status             → ingress connection state, counters, lanes
GET /api/equipment/{id}/health       → health score from the rolling window,
                                       or stored history when the window is empty
POST /api/equipment/{id}/alerts/{rule}/acknowledge
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from core.errors import RegistryUnavailable, SinkUnavailable, UnknownEquipment
from core.websocket import alert_view
from services.rule_evaluator import health_score, recommendations

router = APIRouter(prefix="/api", tags=["status"])


@router.get("/pipeline/status")
async def pipeline_status(request: Request) -> dict:
    state = request.app.state
    return {
        "ingress": state.ingress.state.value,
        "accepting": state.coordinator.accepting,
        "lanes": state.coordinator.lane_depths(),
        "counters": state.diagnostics.snapshot(),
        "open_alerts": len(state.alert_sink.open_alerts()),
        "tracked_equipment": len(state.rolling_store),
    }


@router.get("/equipment/{equipment_id}/health")
async def equipment_health(equipment_id: str, request: Request) -> dict:
    state = request.app.state
    try:
        profile = await state.registry.lookup(equipment_id)
    except UnknownEquipment:
        raise HTTPException(status_code=404, detail="Equipment not found")
    except RegistryUnavailable:
        raise HTTPException(status_code=503, detail="Equipment registry unavailable")

    store = state.rolling_store
    snapshot = store.snapshot(equipment_id)
    source = "window"
    if snapshot is None:
        # nothing since boot; the lanes own the store, so only preview stored history
        try:
            history = await state.storage.recent_readings(equipment_id, store.capacity)
        except SinkUnavailable:
            raise HTTPException(status_code=503, detail="Reading history unavailable")
        if history:
            snapshot = store.preview(equipment_id, history)
            source = "history"

    latest = dict(snapshot.latest) if snapshot else {}
    score = health_score(latest, profile)
    days = profile.days_since_maintenance(datetime.now(timezone.utc))
    return {
        "equipment_id": equipment_id,
        "status": profile.status.value,
        "health_score": score,
        "latest": latest,
        "mean": dict(snapshot.mean) if snapshot else {},
        "max": dict(snapshot.max) if snapshot else {},
        "trend": dict(snapshot.trend) if snapshot else {},
        "window": snapshot.size if snapshot else 0,
        "source": source if snapshot else None,
        "days_since_maintenance": days,
        "active_alerts": [
            {**alert_view(a), "opened_at": a.opened_at.isoformat()}
            for a in state.alert_sink.open_alerts(equipment_id)
        ],
        "recommendations": recommendations(score, days),
    }


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str


@router.post("/equipment/{equipment_id}/alerts/{rule_id}/acknowledge")
async def acknowledge_alert(
    equipment_id: str, rule_id: str, body: AcknowledgeRequest, request: Request,
) -> dict:
    sink = request.app.state.alert_sink
    try:
        alert = await sink.acknowledge(
            equipment_id, rule_id, body.acknowledged_by, datetime.now(timezone.utc),
        )
    except SinkUnavailable:
        raise HTTPException(status_code=503, detail="Alert storage unavailable")
    if alert is None:
        raise HTTPException(status_code=404, detail="No open alert for this rule")
    return {"alert_id": alert.alert_id, "status": alert.status.value}
