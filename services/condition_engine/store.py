"""Definition Store: CRUD for alert/rule definitions, alert events and rule fire logs.

No business logic lives here. Two adapters share the document helpers:
``InMemoryDefinitionStore`` (tests, single-process runs) and
``PostgresDefinitionStore`` (asyncpg, JSONB documents).
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol

import asyncpg
from pydantic import ValidationError

from condition_engine.models import (
    AlertDefinition,
    AlertEvent,
    FireLogRecord,
    RuleDefinition,
    ms_to_iso,
    new_id,
    now_ms,
)

logger = logging.getLogger(__name__)

MAX_LOG_LIMIT = 200


class DefinitionNotFound(LookupError):
    pass


class DefinitionInvalid(ValueError):
    pass


def now_iso() -> str:
    return ms_to_iso(now_ms())


def clamp_log_limit(limit: Any, default: int = 50) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = default
    return max(1, min(MAX_LOG_LIMIT, value))


def new_alert(body: dict) -> AlertDefinition:
    """Build a fresh alert definition from a create request body."""
    if not body.get("name"):
        raise DefinitionInvalid("name required")
    if not body.get("severity"):
        raise DefinitionInvalid("severity required")
    stamp = now_iso()
    doc = {k: v for k, v in body.items() if k not in {"id", "lastFiredAt", "fireCount"}}
    doc.update(
        id=new_id("alert"),
        name=str(body["name"]),
        enabled=body.get("enabled") is not False,
        createdAt=stamp,
        updatedAt=stamp,
        lastFiredAt=None,
        fireCount=0,
    )
    if not isinstance(doc.get("conditions"), list):
        doc["conditions"] = []
    try:
        return AlertDefinition.model_validate(doc)
    except ValidationError as exc:
        raise DefinitionInvalid(str(exc)) from exc


def new_rule(body: dict) -> RuleDefinition:
    """Build a fresh rule definition from a create request body."""
    if not body.get("name"):
        raise DefinitionInvalid("name required")
    if not body.get("actions"):
        raise DefinitionInvalid("actions required")
    stamp = now_iso()
    doc = {k: v for k, v in body.items() if k not in {"id", "lastFiredAt", "fireCount"}}
    doc.update(
        id=new_id("rule"),
        name=str(body["name"]),
        enabled=body.get("enabled") is not False,
        createdAt=stamp,
        updatedAt=stamp,
        lastFiredAt=None,
        fireCount=0,
    )
    try:
        return RuleDefinition.model_validate(doc)
    except ValidationError as exc:
        raise DefinitionInvalid(str(exc)) from exc


def apply_patch(model_cls, current: dict, patch: dict):
    """Shallow-merge a patch into a stored document and re-validate it."""
    doc = dict(current)
    doc.update({k: v for k, v in patch.items() if k != "id"})
    doc["updatedAt"] = now_iso()
    try:
        return model_cls.model_validate(doc)
    except ValidationError as exc:
        raise DefinitionInvalid(str(exc)) from exc


def _load_doc(raw) -> dict:
    if isinstance(raw, str):
        return json.loads(raw)
    if isinstance(raw, dict):
        return raw
    return {}


class DefinitionStore(Protocol):
    async def list_alerts(self) -> list[AlertDefinition]: ...
    async def get_alert(self, alert_id: str) -> AlertDefinition: ...
    async def create_alert(self, body: dict) -> AlertDefinition: ...
    async def update_alert(self, alert_id: str, patch: dict) -> AlertDefinition: ...
    async def delete_alert(self, alert_id: str) -> None: ...

    async def list_rules(self) -> list[RuleDefinition]: ...
    async def get_rule(self, rule_id: str) -> RuleDefinition: ...
    async def create_rule(self, body: dict) -> RuleDefinition: ...
    async def update_rule(self, rule_id: str, patch: dict) -> RuleDefinition: ...
    async def delete_rule(self, rule_id: str) -> None: ...

    async def update_metadata(self, definition_id: str, last_fired_at: str, fire_count_delta: int = 1) -> None: ...
    async def append_event_log(self, rule_id: str, record: FireLogRecord) -> None: ...
    async def list_event_log(self, rule_id: str, limit: int = 50) -> list[FireLogRecord]: ...

    async def create_event(self, event: AlertEvent) -> AlertEvent: ...
    async def list_events(
        self, limit: int = 200, severity: Optional[str] = None, only_open: bool = False
    ) -> list[AlertEvent]: ...
    async def ack_event(self, event_id: str) -> AlertEvent: ...
    async def count_open_events(self) -> int: ...


class InMemoryDefinitionStore:
    """Keeps JSON documents in dicts; every read re-parses, like a real backend."""

    def __init__(self):
        self._alerts: dict[str, str] = {}
        self._rules: dict[str, str] = {}
        self._events: dict[str, str] = {}
        self._fire_logs: dict[str, list[str]] = {}

    @staticmethod
    def _dump(model) -> str:
        return json.dumps(model.to_doc())

    # alerts -----------------------------------------------------------------

    async def list_alerts(self) -> list[AlertDefinition]:
        return [AlertDefinition.model_validate_json(raw) for raw in self._alerts.values()]

    async def get_alert(self, alert_id: str) -> AlertDefinition:
        raw = self._alerts.get(alert_id)
        if raw is None:
            raise DefinitionNotFound(alert_id)
        return AlertDefinition.model_validate_json(raw)

    async def create_alert(self, body: dict) -> AlertDefinition:
        alert = new_alert(body)
        self._alerts[alert.id] = self._dump(alert)
        return alert

    async def save_alert(self, alert: AlertDefinition) -> AlertDefinition:
        self._alerts[alert.id] = self._dump(alert)
        return alert

    async def update_alert(self, alert_id: str, patch: dict) -> AlertDefinition:
        current = await self.get_alert(alert_id)
        alert = apply_patch(AlertDefinition, current.to_doc(), patch)
        self._alerts[alert_id] = self._dump(alert)
        return alert

    async def delete_alert(self, alert_id: str) -> None:
        if self._alerts.pop(alert_id, None) is None:
            raise DefinitionNotFound(alert_id)

    # rules ------------------------------------------------------------------

    async def list_rules(self) -> list[RuleDefinition]:
        return [RuleDefinition.model_validate_json(raw) for raw in self._rules.values()]

    async def get_rule(self, rule_id: str) -> RuleDefinition:
        raw = self._rules.get(rule_id)
        if raw is None:
            raise DefinitionNotFound(rule_id)
        return RuleDefinition.model_validate_json(raw)

    async def create_rule(self, body: dict) -> RuleDefinition:
        rule = new_rule(body)
        self._rules[rule.id] = self._dump(rule)
        return rule

    async def save_rule(self, rule: RuleDefinition) -> RuleDefinition:
        self._rules[rule.id] = self._dump(rule)
        return rule

    async def update_rule(self, rule_id: str, patch: dict) -> RuleDefinition:
        current = await self.get_rule(rule_id)
        rule = apply_patch(RuleDefinition, current.to_doc(), patch)
        self._rules[rule_id] = self._dump(rule)
        return rule

    async def delete_rule(self, rule_id: str) -> None:
        if self._rules.pop(rule_id, None) is None:
            raise DefinitionNotFound(rule_id)
        self._fire_logs.pop(rule_id, None)

    # metadata + logs --------------------------------------------------------

    async def update_metadata(self, definition_id: str, last_fired_at: str, fire_count_delta: int = 1) -> None:
        for table, model_cls in ((self._alerts, AlertDefinition), (self._rules, RuleDefinition)):
            raw = table.get(definition_id)
            if raw is None:
                continue
            model = model_cls.model_validate_json(raw)
            model.last_fired_at = last_fired_at
            model.fire_count += fire_count_delta
            table[definition_id] = self._dump(model)
            return
        raise DefinitionNotFound(definition_id)

    async def append_event_log(self, rule_id: str, record: FireLogRecord) -> None:
        self._fire_logs.setdefault(rule_id, []).append(self._dump(record))

    async def list_event_log(self, rule_id: str, limit: int = 50) -> list[FireLogRecord]:
        rows = self._fire_logs.get(rule_id, [])[-clamp_log_limit(limit):]
        records = [FireLogRecord.model_validate_json(raw) for raw in rows]
        return sorted(records, key=lambda r: r.at)

    # events -----------------------------------------------------------------

    async def create_event(self, event: AlertEvent) -> AlertEvent:
        self._events[event.id] = self._dump(event)
        return event

    async def list_events(
        self, limit: int = 200, severity: Optional[str] = None, only_open: bool = False
    ) -> list[AlertEvent]:
        events = sorted(
            (AlertEvent.model_validate_json(raw) for raw in self._events.values()),
            key=lambda e: e.ts,
        )
        if limit:
            events = events[-int(limit):]
        if severity:
            events = [e for e in events if e.severity == severity]
        if only_open:
            events = [e for e in events if not e.acked]
        events.reverse()
        return events

    async def ack_event(self, event_id: str) -> AlertEvent:
        raw = self._events.get(event_id)
        if raw is None:
            raise DefinitionNotFound(event_id)
        event = AlertEvent.model_validate_json(raw)
        event.acked = True
        event.acked_at = now_iso()
        self._events[event_id] = self._dump(event)
        return event

    async def count_open_events(self) -> int:
        return sum(1 for raw in self._events.values() if not json.loads(raw).get("acked"))


DDL = """
CREATE TABLE IF NOT EXISTS condition_alert (
  id        TEXT PRIMARY KEY,
  position  BIGSERIAL,
  doc       JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS condition_rule (
  id        TEXT PRIMARY KEY,
  position  BIGSERIAL,
  doc       JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS alert_event (
  id        TEXT PRIMARY KEY,
  alert_id  TEXT NOT NULL,
  ts        BIGINT NOT NULL,
  severity  TEXT NOT NULL,
  acked     BOOLEAN NOT NULL DEFAULT false,
  doc       JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS rule_fire_log (
  id        BIGSERIAL PRIMARY KEY,
  rule_id   TEXT NOT NULL,
  at        TEXT NOT NULL,
  doc       JSONB NOT NULL
);

CREATE INDEX IF NOT EXISTS alert_event_ts_idx ON alert_event (ts DESC);
CREATE INDEX IF NOT EXISTS alert_event_open_idx ON alert_event (acked) WHERE acked = false;
CREATE INDEX IF NOT EXISTS rule_fire_log_rule_idx ON rule_fire_log (rule_id, id DESC);
"""

_DEFINITION_TABLES = {
    AlertDefinition: "condition_alert",
    RuleDefinition: "condition_rule",
}


class PostgresDefinitionStore:
    """asyncpg-backed store; definitions and records are JSONB documents."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @classmethod
    async def connect(cls, dsn: str, min_size: int = 1, max_size: int = 5) -> "PostgresDefinitionStore":
        pool = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size, command_timeout=10)
        store = cls(pool)
        await store.ensure_schema()
        return store

    async def close(self) -> None:
        await self.pool.close()

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            for stmt in DDL.strip().split(";"):
                s = stmt.strip()
                if s:
                    await conn.execute(s + ";")

    # generic definition helpers ---------------------------------------------

    async def _list(self, model_cls):
        table = _DEFINITION_TABLES[model_cls]
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT doc FROM {table} ORDER BY position")
        return [model_cls.model_validate(_load_doc(r["doc"])) for r in rows]

    async def _get(self, model_cls, definition_id: str):
        table = _DEFINITION_TABLES[model_cls]
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT doc FROM {table} WHERE id = $1", definition_id)
        if row is None:
            raise DefinitionNotFound(definition_id)
        return model_cls.model_validate(_load_doc(row["doc"]))

    async def _insert(self, model):
        table = _DEFINITION_TABLES[type(model)]
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"INSERT INTO {table} (id, doc) VALUES ($1, $2::jsonb)",
                model.id,
                json.dumps(model.to_doc()),
            )
        return model

    async def _update(self, model_cls, definition_id: str, patch: dict):
        table = _DEFINITION_TABLES[model_cls]
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT doc FROM {table} WHERE id = $1 FOR UPDATE", definition_id
                )
                if row is None:
                    raise DefinitionNotFound(definition_id)
                model = apply_patch(model_cls, _load_doc(row["doc"]), patch)
                await conn.execute(
                    f"UPDATE {table} SET doc = $2::jsonb WHERE id = $1",
                    definition_id,
                    json.dumps(model.to_doc()),
                )
        return model

    async def _delete(self, model_cls, definition_id: str) -> None:
        table = _DEFINITION_TABLES[model_cls]
        async with self.pool.acquire() as conn:
            status = await conn.execute(f"DELETE FROM {table} WHERE id = $1", definition_id)
            if status.endswith(" 0"):
                raise DefinitionNotFound(definition_id)
            if model_cls is RuleDefinition:
                await conn.execute("DELETE FROM rule_fire_log WHERE rule_id = $1", definition_id)

    # alerts / rules ---------------------------------------------------------

    async def list_alerts(self) -> list[AlertDefinition]:
        return await self._list(AlertDefinition)

    async def get_alert(self, alert_id: str) -> AlertDefinition:
        return await self._get(AlertDefinition, alert_id)

    async def create_alert(self, body: dict) -> AlertDefinition:
        return await self._insert(new_alert(body))

    async def update_alert(self, alert_id: str, patch: dict) -> AlertDefinition:
        return await self._update(AlertDefinition, alert_id, patch)

    async def delete_alert(self, alert_id: str) -> None:
        await self._delete(AlertDefinition, alert_id)

    async def list_rules(self) -> list[RuleDefinition]:
        return await self._list(RuleDefinition)

    async def get_rule(self, rule_id: str) -> RuleDefinition:
        return await self._get(RuleDefinition, rule_id)

    async def create_rule(self, body: dict) -> RuleDefinition:
        return await self._insert(new_rule(body))

    async def update_rule(self, rule_id: str, patch: dict) -> RuleDefinition:
        return await self._update(RuleDefinition, rule_id, patch)

    async def delete_rule(self, rule_id: str) -> None:
        await self._delete(RuleDefinition, rule_id)

    # metadata + logs --------------------------------------------------------

    async def update_metadata(self, definition_id: str, last_fired_at: str, fire_count_delta: int = 1) -> None:
        async with self.pool.acquire() as conn:
            for table in _DEFINITION_TABLES.values():
                status = await conn.execute(
                    f"""
                    UPDATE {table}
                    SET doc = doc || jsonb_build_object(
                        'lastFiredAt', $2::text,
                        'fireCount', COALESCE((doc->>'fireCount')::int, 0) + $3::int
                    )
                    WHERE id = $1
                    """,
                    definition_id,
                    last_fired_at,
                    fire_count_delta,
                )
                if not status.endswith(" 0"):
                    return
        raise DefinitionNotFound(definition_id)

    async def append_event_log(self, rule_id: str, record: FireLogRecord) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO rule_fire_log (rule_id, at, doc) VALUES ($1, $2, $3::jsonb)",
                rule_id,
                record.at,
                json.dumps(record.to_doc()),
            )

    async def list_event_log(self, rule_id: str, limit: int = 50) -> list[FireLogRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT doc FROM (
                    SELECT id, at, doc FROM rule_fire_log
                    WHERE rule_id = $1
                    ORDER BY id DESC
                    LIMIT $2
                ) recent
                ORDER BY at, id
                """,
                rule_id,
                clamp_log_limit(limit),
            )
        return [FireLogRecord.model_validate(_load_doc(r["doc"])) for r in rows]

    # events -----------------------------------------------------------------

    async def create_event(self, event: AlertEvent) -> AlertEvent:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO alert_event (id, alert_id, ts, severity, acked, doc)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                """,
                event.id,
                event.alert_id,
                event.ts,
                event.severity,
                event.acked,
                json.dumps(event.to_doc()),
            )
        return event

    async def list_events(
        self, limit: int = 200, severity: Optional[str] = None, only_open: bool = False
    ) -> list[AlertEvent]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT doc FROM (
                    SELECT ts, severity, acked, doc FROM alert_event
                    ORDER BY ts DESC
                    LIMIT $1
                ) recent
                WHERE ($2::text IS NULL OR severity = $2)
                  AND (NOT $3::boolean OR acked = false)
                ORDER BY ts DESC
                """,
                int(limit or 200),
                severity,
                only_open,
            )
        return [AlertEvent.model_validate(_load_doc(r["doc"])) for r in rows]

    async def ack_event(self, event_id: str) -> AlertEvent:
        acked_at = now_iso()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE alert_event
                SET acked = true,
                    doc = doc || jsonb_build_object('acked', true, 'ackedAt', $2::text)
                WHERE id = $1
                RETURNING doc
                """,
                event_id,
                acked_at,
            )
        if row is None:
            raise DefinitionNotFound(event_id)
        return AlertEvent.model_validate(_load_doc(row["doc"]))

    async def count_open_events(self) -> int:
        async with self.pool.acquire() as conn:
            count = await conn.fetchval("SELECT COUNT(*) FROM alert_event WHERE acked = false")
        return int(count or 0)
