"""Definition, event and telemetry models for the condition engine.

Definitions are stored as JSON documents whose keys keep the camelCase
names of the saved alert/rule records (``holdSec``, ``roomName`` ...).
Python code uses the snake_case attribute names.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    NonNegativeFloat,
    NonNegativeInt,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    Tag,
    field_serializer,
    field_validator,
)

KNOWN_METRICS = ("temp_f", "rh_pct", "tvoc_ppb", "eco2_ppm", "light_on")
OCCUPANCY_FIELD = "count"
RELAY_FIELD = "relay"

Operator = Literal["==", "!=", ">", ">=", "<", "<=", "contains"]
Scalar = Union[StrictBool, StrictInt, StrictFloat, StrictStr]
Severity = Literal["info", "warn", "crit"]
RelayCommand = Literal["ON", "OFF"]
Seconds = Union[NonNegativeInt, NonNegativeFloat]


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def ms_to_iso(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


class EntityKind(str, Enum):
    SENSOR = "sensor"
    OCCUPANCY = "occupancy"
    ACTUATOR = "actuator"


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_doc(self) -> dict[str, Any]:
        """JSON-ready dict using the stored (camelCase) key names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Condition tests
# ---------------------------------------------------------------------------


class EnvTest(_Document):
    type: Literal["env"] = "env"
    metric: str = "temp_f"
    op: Optional[Operator] = None
    value: Optional[Scalar] = None
    room_name: Optional[str] = Field(default=None, alias="roomName")
    device_id: Optional[str] = Field(default=None, alias="deviceId")


class OccupancyTest(_Document):
    type: Literal["occ"] = "occ"
    op: Optional[Operator] = None
    value: Optional[Scalar] = None
    debounce_sec: Seconds = Field(default=0, alias="debounceSec")
    room_name: Optional[str] = Field(default=None, alias="roomName")


class TimeTest(_Document):
    type: Literal["time"] = "time"
    op: Optional[Operator] = None
    start_at_iso: Optional[str] = Field(default=None, alias="startAtIso")
    repeat_days: int = Field(default=1, ge=1, alias="repeatDays")


def _test_tag(value: Any) -> str:
    # Saved alert tests omit "type" for environmental checks.
    if isinstance(value, dict):
        return value.get("type") or "env"
    return getattr(value, "type", "env")


ConditionTest = Annotated[
    Union[
        Annotated[EnvTest, Tag("env")],
        Annotated[OccupancyTest, Tag("occ")],
        Annotated[TimeTest, Tag("time")],
    ],
    Discriminator(_test_tag),
]


class ConditionGroup(_Document):
    tests: list[ConditionTest] = Field(default_factory=list)
    mode: Literal["ALL", "ANY"] = "ALL"


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class PlugAction(_Document):
    type: Literal["plug"] = "plug"
    device_id: str = Field(alias="deviceId", min_length=1)
    command: RelayCommand

    @field_validator("command", mode="before")
    @classmethod
    def _upper_command(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class TopicAction(_Document):
    type: Literal["topic"] = "topic"
    topic: str = Field(min_length=1)
    payload: Scalar = ""


Action = Annotated[Union[PlugAction, TopicAction], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


class AlertScope(_Document):
    mode: Literal["any", "room"] = "any"
    room: Optional[str] = None


class _Definition(_Document):
    id: str
    name: str = Field(min_length=1)
    enabled: bool = True
    conditions: list[ConditionGroup] = Field(default_factory=list)
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    last_fired_at: Optional[str] = Field(default=None, alias="lastFiredAt")
    fire_count: int = Field(default=0, alias="fireCount")

    @field_serializer("conditions")
    def _dump_conditions(self, groups: list[ConditionGroup]) -> list[dict[str, Any]]:
        # Keys the definition was saved with only; defaults apply again on load.
        return [group.model_dump(mode="json", by_alias=True, exclude_unset=True) for group in groups]


class AlertDefinition(_Definition):
    severity: Severity = "warn"
    scope: AlertScope = Field(default_factory=AlertScope)
    hold_sec: Seconds = Field(default=30, alias="holdSec")
    cooldown_sec: Seconds = Field(default=300, alias="cooldownSec")

    def scoped_room(self) -> Optional[str]:
        if self.scope.mode == "room" and self.scope.room:
            return self.scope.room
        return None


class RuleDefinition(_Definition):
    kind: str = "generic"
    actions: list[Action] = Field(default_factory=list)
    priority: Union[int, float] = 100
    cooldown_sec: Seconds = Field(default=30, alias="cooldownSec")
    visibility: str = "site"
    owner_user_id: Optional[str] = Field(default=None, alias="ownerUserId")

    @field_validator("conditions", mode="before")
    @classmethod
    def _unwrap_groups(cls, v):
        # Older rule records stored {"groups": [...]}.
        if isinstance(v, dict):
            return v.get("groups") or []
        return v


# ---------------------------------------------------------------------------
# Records produced by the schedulers
# ---------------------------------------------------------------------------


class AlertEvent(_Document):
    id: str
    alert_id: str = Field(alias="alertId")
    name: str = ""
    severity: Severity = "warn"
    room: Optional[str] = None
    message: str = ""
    values: dict[str, Any] = Field(default_factory=dict)
    ts: int
    ts_iso: str = Field(alias="tsISO")
    acked: bool = False
    acked_at: Optional[str] = Field(default=None, alias="ackedAt")


class FireLogRecord(_Document):
    at: str
    summary: str = ""
    actions: list[dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[str] = Field(default=None, alias="createdAt")


# ---------------------------------------------------------------------------
# In-memory state records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TelemetrySample:
    entity_id: str
    fields: dict[str, Any]
    observed_at: int

    def value(self, name: str) -> Any:
        return self.fields.get(name)


@dataclass(frozen=True)
class ActuatorState:
    relay: str
    observed_at: int


@dataclass
class BreachState:
    breach_start_at: Optional[int] = None
    last_fire_at: Optional[int] = None
    breached: bool = False

