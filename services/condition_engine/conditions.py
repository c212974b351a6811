"""Pure condition evaluation.

A definition holds groups of tests. A group matches when all of its tests
hold (or any, for ``mode: ANY``); a definition matches when any group does.
Missing telemetry, unknown metrics and unparseable operands make a single
test false. Nothing in here raises for bad data or touches timing state.
"""
from __future__ import annotations

import math
import operator
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, tzinfo
from typing import Any, Iterable, Optional

from dateutil import parser as dtparser
from dateutil import tz as dttz

from condition_engine.models import (
    KNOWN_METRICS,
    OCCUPANCY_FIELD,
    ConditionGroup,
    EntityKind,
    EnvTest,
    OccupancyTest,
    TelemetrySample,
    TimeTest,
)
from condition_engine.state import EntityDirectory, TelemetryStateStore

TIME_EQUALITY_TOLERANCE_MS = 60 * 1000

_NUMERIC_OPS = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}


def resolve_timezone(name: str | None) -> tzinfo:
    """Timezone used for daily time tests; empty means the host's local zone."""
    if not name:
        return dttz.tzlocal()
    zone = dttz.gettz(name)
    if zone is None:
        raise RuntimeError(f"Unknown timezone {name!r}")
    return zone


@dataclass(frozen=True)
class EvaluationContext:
    """Everything a single evaluation pass reads.

    Alerts set ``scope_entity`` and every env/occupancy test reads that
    entity. Rules leave it unset and each test names its own room/device.
    """

    telemetry: TelemetryStateStore
    now_ms: int
    timezone: tzinfo = field(default_factory=dttz.tzlocal)
    directory: EntityDirectory = field(default_factory=EntityDirectory)
    scope_entity: Optional[str] = None
    allow_contains: bool = False
    default_op: str = ">"
    default_time_op: str = "=="


# ---------------------------------------------------------------------------
# Operand coercion
# ---------------------------------------------------------------------------


def as_number(value: Any) -> Optional[float]:
    """Numeric view of a value, or None when it does not coerce."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def as_text(value: Any) -> str:
    """String rendering compatible with how saved definitions were compared."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def compare(actual: Any, op: str, want: Any, allow_contains: bool = True) -> bool:
    """Numeric comparison first; string (in)equality when an operand is not numeric."""
    if actual is None or want is None:
        return False
    if op == "contains":
        return allow_contains and as_text(want) in as_text(actual)

    a = as_number(actual)
    b = as_number(want)
    if a is None or b is None:
        if op == "==":
            return as_text(actual) == as_text(want)
        if op == "!=":
            return as_text(actual) != as_text(want)
        return False

    fn = _NUMERIC_OPS.get(op)
    if fn is None:
        return False
    return fn(a, b)


# ---------------------------------------------------------------------------
# Telemetry lookup
# ---------------------------------------------------------------------------


def lookup_sample(
    ctx: EvaluationContext,
    kind: EntityKind,
    room: Optional[str] = None,
    device_id: Optional[str] = None,
) -> Optional[TelemetrySample]:
    if ctx.scope_entity is not None:
        candidates: Iterable[str] = ctx.directory.candidates(room=ctx.scope_entity)
    else:
        candidates = ctx.directory.candidates(room=room, device_id=device_id)
    for entity_id in candidates:
        sample = ctx.telemetry.get(entity_id, kind)
        if sample is not None:
            return sample
    return None


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


def evaluate_env_test(test: EnvTest, ctx: EvaluationContext) -> bool:
    if test.metric not in KNOWN_METRICS:
        return False
    sample = lookup_sample(ctx, EntityKind.SENSOR, room=test.room_name, device_id=test.device_id)
    if sample is None:
        return False
    return compare(
        sample.value(test.metric),
        test.op or ctx.default_op,
        test.value,
        allow_contains=ctx.allow_contains,
    )


def evaluate_occupancy_test(test: OccupancyTest, ctx: EvaluationContext) -> bool:
    sample = lookup_sample(ctx, EntityKind.OCCUPANCY, room=test.room_name)
    if sample is None:
        return False
    if test.debounce_sec > 0 and ctx.now_ms - sample.observed_at < test.debounce_sec * 1000:
        # count has not been stable long enough
        return False
    return compare(
        sample.value(OCCUPANCY_FIELD),
        test.op or ctx.default_op,
        test.value,
        allow_contains=ctx.allow_contains,
    )


def _parse_anchor(raw: Optional[str], zone: tzinfo) -> Optional[datetime]:
    if not raw:
        return None
    try:
        anchor = dtparser.isoparse(raw)
    except (ValueError, OverflowError):
        return None
    if anchor.tzinfo is None:
        return anchor.replace(tzinfo=zone)
    return anchor.astimezone(zone)


def _epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def evaluate_time_test(test: TimeTest, now_ms: int, zone: tzinfo, default_op: str = "==") -> bool:
    """Daily repeating wall-clock predicate anchored at ``startAtIso``."""
    anchor = _parse_anchor(test.start_at_iso, zone)
    if anchor is None:
        return False

    now = datetime.fromtimestamp(now_ms / 1000, tz=zone)
    days_since_anchor = (now.date() - anchor.date()).days
    if days_since_anchor < 0:
        return False
    if days_since_anchor % test.repeat_days != 0:
        return False

    today = now.date()
    threshold_ms = _epoch_ms(datetime.combine(today, time(anchor.hour, anchor.minute), tzinfo=zone))
    end_of_day_ms = _epoch_ms(datetime.combine(today + timedelta(days=1), time(0), tzinfo=zone)) - 1

    op = test.op or default_op
    if op == "==":
        return abs(now_ms - threshold_ms) <= TIME_EQUALITY_TOLERANCE_MS
    if op == "!=":
        return abs(now_ms - threshold_ms) > TIME_EQUALITY_TOLERANCE_MS
    if op == ">":
        return threshold_ms < now_ms <= end_of_day_ms
    if op == ">=":
        return threshold_ms <= now_ms <= end_of_day_ms
    if op == "<":
        return now_ms < threshold_ms
    if op == "<=":
        return now_ms <= threshold_ms
    return False


def evaluate_test(test, ctx: EvaluationContext) -> bool:
    if isinstance(test, EnvTest):
        return evaluate_env_test(test, ctx)
    if isinstance(test, OccupancyTest):
        return evaluate_occupancy_test(test, ctx)
    if isinstance(test, TimeTest):
        return evaluate_time_test(test, ctx.now_ms, ctx.timezone, ctx.default_time_op)
    raise TypeError(f"unsupported condition test: {type(test).__name__}")


def evaluate_group(group: ConditionGroup, ctx: EvaluationContext) -> bool:
    if not group.tests:
        return False
    results = (evaluate_test(test, ctx) for test in group.tests)
    if group.mode == "ANY":
        return any(results)
    return all(results)


def evaluate_groups(groups: list[ConditionGroup], ctx: EvaluationContext) -> bool:
    """OR across groups. Zero groups never matches."""
    return any(evaluate_group(group, ctx) for group in groups)
