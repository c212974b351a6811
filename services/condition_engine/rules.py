"""Rule scheduler: cooldown-gated condition sets that drive actuators.

Plug actions are idempotent against the last relay state the device itself
reported. The scheduler never records a command as the device state; the
next status message does that, so a lost command is simply re-sent on a
later tick.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Any, Optional

from condition_engine.conditions import EvaluationContext, as_text, evaluate_groups, resolve_timezone
from condition_engine.models import (
    FireLogRecord,
    PlugAction,
    RuleDefinition,
    TopicAction,
    ms_to_iso,
)
from condition_engine.mqtt_sender import CommandPublisher
from condition_engine.scheduling import PeriodicScheduler
from condition_engine.state import ActuatorStateStore, EntityDirectory, TelemetryStateStore
from shared.logging import log_event
from shared.metrics import actuator_commands_total, definitions_evaluated_total, rule_fires_total

logger = logging.getLogger(__name__)

RULE_TICK_SECONDS = 3.0


@dataclass
class RuleFire:
    rule_id: str
    fired_at: int
    applied: list[dict[str, Any]] = field(default_factory=list)


def fire_summary(rule: RuleDefinition, applied: list[dict[str, Any]]) -> str:
    return f"{rule.name or rule.id} fired; actions: {len(applied)}"


class RuleScheduler(PeriodicScheduler[RuleDefinition]):
    name = "rules"

    def __init__(
        self,
        store,
        telemetry: TelemetryStateStore,
        actuators: ActuatorStateStore,
        publisher: CommandPublisher,
        directory: Optional[EntityDirectory] = None,
        timezone: Optional[tzinfo] = None,
        tick_seconds: float = RULE_TICK_SECONDS,
        **kwargs,
    ):
        super().__init__(store.list_rules, tick_seconds, **kwargs)
        self.store = store
        self.telemetry = telemetry
        self.actuators = actuators
        self.publisher = publisher
        self.directory = directory or EntityDirectory()
        self.timezone = timezone or resolve_timezone(None)
        # rule id -> ms of last fire that applied at least one action
        self._last_fired: dict[str, int] = {}

    def set_definitions(self, definitions: list[RuleDefinition]) -> None:
        super().set_definitions(definitions)
        live = {rule.id for rule in self.definitions}
        for stale in set(self._last_fired) - live:
            del self._last_fired[stale]

    def ordered(self) -> list[RuleDefinition]:
        """Lower priority value first; ties keep store order."""
        return sorted(self.definitions, key=lambda r: r.priority)

    def in_cooldown(self, rule: RuleDefinition, now: int) -> bool:
        last = self._last_fired.get(rule.id)
        if last is None:
            return False
        return now - last < rule.cooldown_sec * 1000

    def tick(self, now_ms: Optional[int] = None) -> list[RuleFire]:
        now = self.clock() if now_ms is None else now_ms
        self.last_tick_at = now
        fires: list[RuleFire] = []
        for rule in self.ordered():
            if not rule.enabled or self.in_cooldown(rule, now):
                continue
            try:
                fire = self._evaluate(rule, now)
            except Exception:
                logger.exception("rule evaluation failed", extra={"rule_id": rule.id})
                continue
            if fire is not None:
                fires.append(fire)
        return fires

    def _evaluate(self, rule: RuleDefinition, now: int) -> Optional[RuleFire]:
        ctx = EvaluationContext(
            telemetry=self.telemetry,
            now_ms=now,
            timezone=self.timezone,
            directory=self.directory,
            allow_contains=False,
            default_op=">=",
            default_time_op="==",
        )
        definitions_evaluated_total.labels(family="rule").inc()
        if not evaluate_groups(rule.conditions, ctx):
            return None

        applied: list[dict[str, Any]] = []
        for action in rule.actions:
            if isinstance(action, PlugAction):
                if self.actuators.last_known_command(action.device_id) == action.command:
                    actuator_commands_total.labels(action_type="plug", result="skipped").inc()
                    logger.debug(
                        "plug already in desired state",
                        extra={"rule_id": rule.id, "device_id": action.device_id, "command": action.command},
                    )
                    continue
                self.effects.dispatch(
                    "rules.publish_command",
                    self._publish_command(rule.id, action),
                    rule_id=rule.id,
                    device_id=action.device_id,
                )
                applied.append({"type": "plug", "deviceId": action.device_id, "command": action.command})
            elif isinstance(action, TopicAction):
                self.effects.dispatch(
                    "rules.publish_topic",
                    self._publish_topic(rule.id, action),
                    rule_id=rule.id,
                    topic=action.topic,
                )
                applied.append({"type": "topic", "topic": action.topic})
            else:
                raise TypeError(f"unsupported action: {type(action).__name__}")

        if not applied:
            # nothing changed; leave cooldown untouched so the next tick re-checks
            return None

        self._last_fired[rule.id] = now
        rule_fires_total.inc()
        at = ms_to_iso(now)
        record = FireLogRecord(at=at, summary=fire_summary(rule, applied), actions=applied, created_at=at)
        self.effects.dispatch("rules.update_metadata", self.store.update_metadata(rule.id, at), rule_id=rule.id)
        self.effects.dispatch("rules.append_log", self.store.append_event_log(rule.id, record), rule_id=rule.id)
        log_event(logger, "rule fired", rule_id=rule.id, actions_applied=len(applied))
        return RuleFire(rule_id=rule.id, fired_at=now, applied=applied)

    async def _publish_command(self, rule_id: str, action: PlugAction) -> None:
        result = await self.publisher.publish_command(action.device_id, action.command)
        outcome = "published" if result.success else "failed"
        actuator_commands_total.labels(action_type="plug", result=outcome).inc()
        if not result.success:
            log_event(
                logger,
                "relay command failed",
                level="ERROR",
                rule_id=rule_id,
                device_id=action.device_id,
                command=action.command,
                error=result.error,
            )

    async def _publish_topic(self, rule_id: str, action: TopicAction) -> None:
        payload = action.payload if isinstance(action.payload, str) else as_text(action.payload)
        result = await self.publisher.publish_topic(action.topic, payload)
        outcome = "published" if result.success else "failed"
        actuator_commands_total.labels(action_type="topic", result=outcome).inc()
        if not result.success:
            log_event(
                logger,
                "topic publish failed",
                level="ERROR",
                rule_id=rule_id,
                topic=action.topic,
                error=result.error,
            )
