"""Alert scheduler: hold/cooldown gated, notify-only condition sets."""
from __future__ import annotations

import logging
from datetime import tzinfo
from typing import Any, Optional

from condition_engine.breach import BreachTracker
from condition_engine.conditions import (
    EvaluationContext,
    as_text,
    evaluate_groups,
    lookup_sample,
    resolve_timezone,
)
from condition_engine.models import (
    OCCUPANCY_FIELD,
    AlertDefinition,
    AlertEvent,
    EntityKind,
    ms_to_iso,
    new_id,
)
from condition_engine.notifications import BadgeCounter
from condition_engine.scheduling import PeriodicScheduler
from condition_engine.state import EntityDirectory, TelemetryStateStore
from shared.logging import log_event
from shared.metrics import alert_events_fired_total, definitions_evaluated_total

logger = logging.getLogger(__name__)

ALERT_TICK_SECONDS = 2.0

# (field, label, unit) in message order
_MESSAGE_FIELDS = (
    ("temp_f", "temp", "°F"),
    ("rh_pct", "RH", "%"),
    ("tvoc_ppb", "TVOC", " ppb"),
    ("eco2_ppm", "eCO₂", " ppm"),
)


def build_message(alert_name: str, room: str, fields: dict[str, Any], occupancy: Any) -> str:
    pieces = [
        f"{label} {as_text(fields[name])}{unit}"
        for name, label, unit in _MESSAGE_FIELDS
        if fields.get(name) is not None
    ]
    if occupancy is not None:
        pieces.append(f"count {as_text(occupancy)}")
    message = f'Alert "{alert_name}" triggered in {room}'
    if pieces:
        message += " — " + ", ".join(pieces)
    return message


def build_event(
    alert_id: str,
    name: str,
    severity: str,
    room: Optional[str],
    message: str,
    values: dict[str, Any],
    ts: int,
) -> AlertEvent:
    return AlertEvent(
        id=new_id("ev"),
        alert_id=alert_id,
        name=name,
        severity=severity,
        room=room,
        message=message,
        values=values,
        ts=ts,
        ts_iso=ms_to_iso(ts),
    )


class AlertScheduler(PeriodicScheduler[AlertDefinition]):
    name = "alerts"

    def __init__(
        self,
        store,
        telemetry: TelemetryStateStore,
        badge: BadgeCounter,
        tracker: Optional[BreachTracker] = None,
        directory: Optional[EntityDirectory] = None,
        timezone: Optional[tzinfo] = None,
        tick_seconds: float = ALERT_TICK_SECONDS,
        **kwargs,
    ):
        super().__init__(store.list_alerts, tick_seconds, **kwargs)
        self.store = store
        self.telemetry = telemetry
        self.badge = badge
        self.tracker = tracker or BreachTracker()
        self.directory = directory or EntityDirectory()
        self.timezone = timezone or resolve_timezone(None)
        self._tracked_ids: set[str] = set()

    def set_definitions(self, definitions: list[AlertDefinition]) -> None:
        super().set_definitions(definitions)
        live = {alert.id for alert in self.definitions}
        for stale in self._tracked_ids - live:
            self.tracker.forget(stale)
        self._tracked_ids = live

    def _entities_for(self, alert: AlertDefinition, known: list[str]) -> list[str]:
        room = alert.scoped_room()
        if room:
            return [room]
        return known

    def tick(self, now_ms: Optional[int] = None) -> list[AlertEvent]:
        """Evaluate every enabled alert against every entity in scope.

        Returns the events fired on this tick; persisting them happens in
        the background.
        """
        now = self.clock() if now_ms is None else now_ms
        self.last_tick_at = now
        fired: list[AlertEvent] = []
        if not self.definitions:
            return fired

        known_entities = self.telemetry.entities()
        for alert in self.definitions:
            if not alert.enabled or not alert.conditions:
                continue
            for entity_id in self._entities_for(alert, known_entities):
                try:
                    event = self._evaluate(alert, entity_id, now)
                except Exception:
                    logger.exception(
                        "alert evaluation failed",
                        extra={"alert_id": alert.id, "entity_id": entity_id},
                    )
                    continue
                if event is not None:
                    fired.append(event)
                    self.effects.dispatch(
                        "alerts.record_fire",
                        self._record_fire(event),
                        alert_id=alert.id,
                        entity_id=entity_id,
                    )
        return fired

    def _evaluate(self, alert: AlertDefinition, entity_id: str, now: int) -> Optional[AlertEvent]:
        ctx = EvaluationContext(
            telemetry=self.telemetry,
            now_ms=now,
            timezone=self.timezone,
            directory=self.directory,
            scope_entity=entity_id,
            allow_contains=True,
            default_op=">",
        )
        definitions_evaluated_total.labels(family="alert").inc()
        matched = evaluate_groups(alert.conditions, ctx)
        should_fire = self.tracker.observe(
            alert.id,
            entity_id,
            matched,
            now,
            hold_sec=alert.hold_sec,
            cooldown_sec=alert.cooldown_sec,
        )
        if not should_fire:
            return None

        sensor = lookup_sample(ctx, EntityKind.SENSOR)
        occupancy = lookup_sample(ctx, EntityKind.OCCUPANCY)
        fields = dict(sensor.fields) if sensor else {}
        count = occupancy.value(OCCUPANCY_FIELD) if occupancy else None
        values = dict(fields)
        if count is not None:
            values[OCCUPANCY_FIELD] = count

        event = build_event(
            alert_id=alert.id,
            name=alert.name,
            severity=alert.severity,
            room=entity_id,
            message=build_message(alert.name, entity_id, fields, count),
            values=values,
            ts=now,
        )
        alert_events_fired_total.labels(severity=alert.severity).inc()
        log_event(
            logger,
            "alert fired",
            alert_id=alert.id,
            entity_id=entity_id,
            severity=alert.severity,
            event_id=event.id,
        )
        return event

    async def _record_fire(self, event: AlertEvent) -> None:
        try:
            await self.store.create_event(event)
            await self.store.update_metadata(event.alert_id, event.ts_iso)
        finally:
            self.effects.dispatch("alerts.badge_refresh", self.badge.refresh())
