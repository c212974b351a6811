"""HTTP surface for managing alert/rule definitions, alert events and rule fire logs.

A thin layer over the Definition Store; the engine picks up changes on its
next definition refresh.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Query
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError
from starlette.requests import Request

from condition_engine.alerts import build_event
from condition_engine.models import FireLogRecord, now_ms
from condition_engine.notifications import BadgeCounter, acknowledge_event
from condition_engine.store import (
    DefinitionInvalid,
    DefinitionNotFound,
    InMemoryDefinitionStore,
    PostgresDefinitionStore,
    clamp_log_limit,
    now_iso,
)
from definitions_api.trace import TraceMiddleware
from shared.config import optional_env
from shared.logging import configure_logging, log_event

logger = logging.getLogger(__name__)

app = FastAPI(title="Room Condition Definitions API", version="0.1")
app.add_middleware(TraceMiddleware)

_store = None


async def get_store():
    global _store
    if _store is None:
        database_url = optional_env("DATABASE_URL")
        if database_url:
            _store = await PostgresDefinitionStore.connect(database_url)
        else:
            log_event(logger, "DATABASE_URL not set, definitions kept in memory", level="WARNING")
            _store = InMemoryDefinitionStore()
    return _store


def get_badge(store=Depends(get_store)) -> BadgeCounter:
    return BadgeCounter(store)


@app.on_event("startup")
async def startup():
    configure_logging("definitions_api")
    await get_store()


@app.on_event("shutdown")
async def shutdown():
    global _store
    close = getattr(_store, "close", None)
    if close is not None:
        await close()
    _store = None


@app.exception_handler(DefinitionInvalid)
async def definition_invalid_handler(request: Request, exc: DefinitionInvalid):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    detail = exc.errors(include_url=False, include_context=False)
    return JSONResponse(status_code=400, content={"error": "invalid definition", "detail": detail})


@app.exception_handler(DefinitionNotFound)
async def not_found_handler(request: Request, exc: DefinitionNotFound):
    return JSONResponse(status_code=404, content={"error": "not found", "id": str(exc)})


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "definitions_api"}


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST.split(";")[0])


# -------------------------
# Alert events
# -------------------------


@app.get("/api/alerts/events")
async def list_alert_events(
    limit: int = Query(200, ge=1),
    severity: Optional[str] = Query(None),
    onlyOpen: Optional[str] = Query(None),
    store=Depends(get_store),
):
    events = await store.list_events(limit=limit, severity=severity, only_open=onlyOpen == "1")
    return {"items": [e.to_doc() for e in events]}


@app.get("/api/alerts/events/count")
async def open_alert_event_count(badge: BadgeCounter = Depends(get_badge)):
    return {"count": await badge.refresh()}


@app.post("/api/alerts/events")
async def record_alert_event(
    body: Optional[dict[str, Any]] = Body(None),
    store=Depends(get_store),
    badge: BadgeCounter = Depends(get_badge),
):
    body = body or {}
    if not body.get("alertId"):
        raise DefinitionInvalid("alertId required")
    try:
        ts = int(body.get("ts") or now_ms())
    except (TypeError, ValueError):
        raise DefinitionInvalid("ts must be epoch milliseconds")
    event = build_event(
        alert_id=str(body["alertId"]),
        name=body.get("name") or "",
        severity=body.get("severity") or "warn",
        room=body.get("room") or None,
        message=body.get("message") or "",
        values=body.get("values") or {},
        ts=ts,
    )
    await store.create_event(event)
    try:
        await store.update_metadata(event.alert_id, event.ts_iso)
    except DefinitionNotFound:
        log_event(logger, "event recorded for unknown alert", level="WARNING", alert_id=event.alert_id)
    await badge.refresh()
    return {"ok": True, "event": event.to_doc()}


@app.post("/api/alerts/events/{event_id}/ack")
async def ack_alert_event(
    event_id: str,
    store=Depends(get_store),
    badge: BadgeCounter = Depends(get_badge),
):
    event = await acknowledge_event(store, badge, event_id)
    return {"ok": True, "event": event.to_doc()}


# -------------------------
# Alert definitions
# -------------------------


@app.get("/api/alerts")
async def list_alerts(store=Depends(get_store)):
    alerts = await store.list_alerts()
    return {"items": [a.to_doc() for a in alerts]}


@app.post("/api/alerts")
async def create_alert(body: Optional[dict[str, Any]] = Body(None), store=Depends(get_store)):
    alert = await store.create_alert(body or {})
    log_event(logger, "alert created", alert_id=alert.id)
    return {"ok": True, "id": alert.id, "alert": alert.to_doc()}


@app.put("/api/alerts/{alert_id}")
async def update_alert(alert_id: str, body: Optional[dict[str, Any]] = Body(None), store=Depends(get_store)):
    alert = await store.update_alert(alert_id, body or {})
    return {"ok": True, "alert": alert.to_doc()}


@app.delete("/api/alerts/{alert_id}")
async def delete_alert(alert_id: str, store=Depends(get_store)):
    await store.delete_alert(alert_id)
    log_event(logger, "alert deleted", alert_id=alert_id)
    return {"ok": True}


# -------------------------
# Rule definitions
# -------------------------


@app.get("/api/rules")
async def list_rules(store=Depends(get_store)):
    rules = await store.list_rules()
    return {"items": [r.to_doc() for r in rules]}


@app.post("/api/rules")
async def create_rule(body: Optional[dict[str, Any]] = Body(None), store=Depends(get_store)):
    rule = await store.create_rule(body or {})
    log_event(logger, "rule created", rule_id=rule.id)
    return {"ok": True, "id": rule.id, "rule": rule.to_doc()}


@app.put("/api/rules/{rule_id}")
async def update_rule(rule_id: str, body: Optional[dict[str, Any]] = Body(None), store=Depends(get_store)):
    rule = await store.update_rule(rule_id, body or {})
    return {"ok": True, "rule": rule.to_doc()}


@app.delete("/api/rules/{rule_id}")
async def delete_rule(rule_id: str, store=Depends(get_store)):
    await store.delete_rule(rule_id)
    log_event(logger, "rule deleted", rule_id=rule_id)
    return {"ok": True}


@app.get("/api/rules/{rule_id}/logs")
async def list_rule_logs(rule_id: str, limit: Optional[str] = Query(None), store=Depends(get_store)):
    records = await store.list_event_log(rule_id, limit=clamp_log_limit(limit))
    return {"items": [r.to_doc() for r in records]}


@app.post("/api/rules/{rule_id}/logs")
async def append_rule_log(rule_id: str, body: Optional[dict[str, Any]] = Body(None), store=Depends(get_store)):
    body = body or {}
    stamp = now_iso()
    record = FireLogRecord(
        at=body.get("at") or stamp,
        summary=body.get("summary") or "",
        actions=body.get("actions") or [],
        created_at=stamp,
    )
    await store.append_event_log(rule_id, record)
    return {"ok": True}
