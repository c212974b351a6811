"""Sample ingestion: MQTT message decoding and the on_sample handler.

Topics (prefix defaults to ``dt/dt-lab``):

    <prefix>/<device>/telemetry            JSON env snapshot
    <prefix>/<device>/count                JSON {room, count, t}
    <prefix>/<device>/switch/relay/state   plain ON | OFF

Anything else, or any payload that does not decode, is dropped.
"""
from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Optional

from condition_engine.conditions import as_number
from condition_engine.models import (
    OCCUPANCY_FIELD,
    RELAY_FIELD,
    EntityKind,
)
from condition_engine.state import ActuatorStateStore, EntityDirectory, TelemetryStateStore
from shared.metrics import ingest_samples_total

logger = logging.getLogger(__name__)

ENV_FIELDS = ("temp_f", "rh_pct", "tvoc_ppb", "eco2_ppm")


@dataclass(frozen=True)
class DecodedSample:
    kind: EntityKind
    entity_id: str
    fields: dict[str, Any]
    ts_ms: int


def to_ms(value: Any, default_ms: int) -> int:
    """Seconds or milliseconds since the epoch, normalised to ms."""
    if isinstance(value, bool):
        return default_ms
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            return default_ms
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return default_ms
    return int(value) if value >= 1e12 else int(value * 1000)


def topic_extract(prefix: str, topic: str) -> tuple[Optional[str], Optional[str]]:
    """Return (device_id, msg_type) for topics under prefix."""
    head = prefix.rstrip("/") + "/"
    if not topic.startswith(head):
        return None, None
    parts = topic[len(head):].split("/")
    if len(parts) < 2 or not parts[0]:
        return None, None
    return parts[0], "/".join(parts[1:])


def subscription_topics(prefix: str) -> list[str]:
    prefix = prefix.rstrip("/")
    return [
        f"{prefix}/+/telemetry",
        f"{prefix}/+/count",
        f"{prefix}/+/switch/relay/state",
    ]


def _json_object(payload: bytes) -> Optional[dict]:
    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return obj if isinstance(obj, dict) else None


def decode_message(
    prefix: str,
    topic: str,
    payload: bytes,
    directory: Optional[EntityDirectory] = None,
    now_ms: Optional[int] = None,
) -> Optional[DecodedSample]:
    now = int(time.time() * 1000) if now_ms is None else now_ms
    device_id, msg_type = topic_extract(prefix, topic)
    if device_id is None:
        return None

    if msg_type == "telemetry":
        obj = _json_object(payload)
        if obj is None:
            return None
        fields: dict[str, Any] = {name: as_number(obj.get(name)) for name in ENV_FIELDS}
        fields["light_on"] = bool(obj["light_on"]) if "light_on" in obj else None
        ts_raw = obj.get("ts_ms", obj.get("ts"))
        # sensor samples are stored under the room when the device is mapped
        entity_id = device_id
        if directory is not None:
            entity_id = directory.room_for_device(device_id) or device_id
        return DecodedSample(EntityKind.SENSOR, entity_id, fields, to_ms(ts_raw, now))

    if msg_type == "count":
        obj = _json_object(payload)
        if obj is None or not isinstance(obj.get("room"), str) or not obj["room"]:
            return None
        count = as_number(obj.get(OCCUPANCY_FIELD))
        if count is None or not math.isfinite(count):
            return None
        if count.is_integer():
            count = int(count)
        return DecodedSample(EntityKind.OCCUPANCY, obj["room"], {OCCUPANCY_FIELD: count}, to_ms(obj.get("t"), now))

    if msg_type == "switch/relay/state":
        try:
            relay = payload.decode("utf-8").strip().upper()
        except UnicodeDecodeError:
            return None
        if relay not in ("ON", "OFF"):
            return None
        return DecodedSample(EntityKind.ACTUATOR, device_id, {RELAY_FIELD: relay}, now)

    return None


class IngestHandler:
    """Validates normalized samples and writes them into the state stores."""

    def __init__(self, telemetry: TelemetryStateStore, actuators: ActuatorStateStore):
        self.telemetry = telemetry
        self.actuators = actuators
        self.accepted = 0
        self.rejected = 0

    def _reject(self, kind: str, entity_id: Any, reason: str) -> bool:
        self.rejected += 1
        ingest_samples_total.labels(kind=kind, result="rejected").inc()
        logger.debug("sample dropped", extra={"kind": kind, "entity_id": entity_id, "reason": reason})
        return False

    def on_sample(self, kind, entity_id: str, fields: dict[str, Any], ts_ms: int) -> bool:
        """Store one sample. Returns False when it was dropped as malformed."""
        try:
            kind = EntityKind(kind)
        except ValueError:
            return self._reject(str(kind), entity_id, "unknown kind")
        if not isinstance(entity_id, str) or not entity_id:
            return self._reject(kind.value, entity_id, "missing entity id")
        if not isinstance(fields, dict):
            return self._reject(kind.value, entity_id, "fields not a mapping")
        if isinstance(ts_ms, bool) or not isinstance(ts_ms, (int, float)) or not math.isfinite(ts_ms):
            return self._reject(kind.value, entity_id, "bad timestamp")

        if kind is EntityKind.ACTUATOR:
            relay = fields.get(RELAY_FIELD)
            relay = relay.strip().upper() if isinstance(relay, str) else None
            if relay not in ("ON", "OFF"):
                return self._reject(kind.value, entity_id, "relay must be ON or OFF")
            self.actuators.observe(entity_id, relay, int(ts_ms))
        elif kind is EntityKind.OCCUPANCY:
            count = as_number(fields.get(OCCUPANCY_FIELD))
            if count is None or not math.isfinite(count):
                return self._reject(kind.value, entity_id, "count missing or not numeric")
            self.telemetry.upsert(entity_id, fields, int(ts_ms), kind=EntityKind.OCCUPANCY)
        else:
            self.telemetry.upsert(entity_id, fields, int(ts_ms), kind=EntityKind.SENSOR)

        self.accepted += 1
        ingest_samples_total.labels(kind=kind.value, result="accepted").inc()
        return True

    def on_message(
        self,
        prefix: str,
        topic: str,
        payload: bytes,
        directory: Optional[EntityDirectory] = None,
    ) -> bool:
        sample = decode_message(prefix, topic, payload, directory)
        if sample is None:
            self.rejected += 1
            ingest_samples_total.labels(kind="unknown", result="rejected").inc()
            logger.debug("undecodable message", extra={"topic": topic})
            return False
        return self.on_sample(sample.kind, sample.entity_id, sample.fields, sample.ts_ms)
