"""Latest-value state shared between ingestion and the schedulers.

Ingestion may run on the MQTT network thread while both tick loops read
from the event loop, so every map is guarded by its own lock. Stored
samples are immutable; readers never see a half-written snapshot.
"""
from __future__ import annotations

import threading
from typing import Any, Iterable, Mapping, Optional

from condition_engine.models import ActuatorState, EntityKind, TelemetrySample


class TelemetryStateStore:
    """Most recent sample per (kind, entity). No history."""

    def __init__(self):
        self._lock = threading.Lock()
        self._samples: dict[EntityKind, dict[str, TelemetrySample]] = {
            EntityKind.SENSOR: {},
            EntityKind.OCCUPANCY: {},
        }

    def upsert(
        self,
        entity_id: str,
        fields: Mapping[str, Any],
        observed_at: int,
        kind: EntityKind = EntityKind.SENSOR,
    ) -> TelemetrySample:
        """Replace the stored snapshot for entity_id. Callers pass complete fields."""
        sample = TelemetrySample(entity_id=entity_id, fields=dict(fields), observed_at=int(observed_at))
        with self._lock:
            self._samples[EntityKind(kind)][entity_id] = sample
        return sample

    def get(self, entity_id: str, kind: EntityKind = EntityKind.SENSOR) -> Optional[TelemetrySample]:
        with self._lock:
            return self._samples[EntityKind(kind)].get(entity_id)

    def entities(self) -> list[str]:
        """Every entity with a sensor or occupancy sample, in first-seen order."""
        with self._lock:
            seen = dict.fromkeys(self._samples[EntityKind.SENSOR])
            seen.update(dict.fromkeys(self._samples[EntityKind.OCCUPANCY]))
        return list(seen)

    def clear(self) -> None:
        with self._lock:
            for partition in self._samples.values():
                partition.clear()


class ActuatorStateStore:
    """Last relay state confirmed by the devices themselves."""

    def __init__(self):
        self._lock = threading.Lock()
        self._states: dict[str, ActuatorState] = {}

    def observe(self, device_id: str, relay: str, observed_at: int) -> ActuatorState:
        state = ActuatorState(relay=relay, observed_at=int(observed_at))
        with self._lock:
            self._states[device_id] = state
        return state

    def get(self, device_id: str) -> Optional[ActuatorState]:
        with self._lock:
            return self._states.get(device_id)

    def last_known_command(self, device_id: str) -> Optional[str]:
        state = self.get(device_id)
        return state.relay if state else None

    def clear(self) -> None:
        with self._lock:
            self._states.clear()


class EntityDirectory:
    """Static room <-> sensor device mapping (ROOM_DEVICE_MAP)."""

    def __init__(self, room_to_device: Optional[Mapping[str, str]] = None):
        self._room_to_device = dict(room_to_device or {})
        self._device_to_room: dict[str, str] = {}
        for room, device in self._room_to_device.items():
            # first room listed for a device wins
            self._device_to_room.setdefault(device, room)

    def device_for_room(self, room: str) -> Optional[str]:
        return self._room_to_device.get(room)

    def room_for_device(self, device_id: str) -> Optional[str]:
        return self._device_to_room.get(device_id)

    def rooms(self) -> list[str]:
        return sorted(self._room_to_device)

    def candidates(self, room: Optional[str] = None, device_id: Optional[str] = None) -> Iterable[str]:
        """Entity ids a test bound to room/device may be stored under, most specific first."""
        if device_id:
            yield device_id
            mapped_room = self.room_for_device(device_id)
            if mapped_room:
                yield mapped_room
        if room:
            yield room
            mapped_device = self.device_for_room(room)
            if mapped_device:
                yield mapped_device
