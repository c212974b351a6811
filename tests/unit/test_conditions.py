from datetime import datetime, timezone

import pytest
from dateutil import tz
from pydantic import ValidationError

from condition_engine.conditions import (
    EvaluationContext,
    as_text,
    compare,
    evaluate_groups,
    evaluate_time_test,
    resolve_timezone,
)
from condition_engine.models import ConditionGroup, EntityKind, TimeTest

pytestmark = [pytest.mark.unit]


def ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def groups(*raw):
    return [ConditionGroup.model_validate(g) for g in raw]


def alert_ctx(telemetry, directory, now, entity="WWH015"):
    return EvaluationContext(
        telemetry=telemetry,
        now_ms=now,
        timezone=tz.UTC,
        directory=directory,
        scope_entity=entity,
        allow_contains=True,
        default_op=">",
    )


def rule_ctx(telemetry, directory, now):
    return EvaluationContext(
        telemetry=telemetry,
        now_ms=now,
        timezone=tz.UTC,
        directory=directory,
        default_op=">=",
    )


def test_compare_numeric_operator_matrix():
    cases = [
        (80, ">", 78, True),
        (78, ">", 78, False),
        (78, ">=", 78, True),
        (70, "<", 78, True),
        (78, "<=", 78, True),
        (78, "==", 78.0, True),
        (77, "!=", 78, True),
    ]
    for actual, op, want, expected in cases:
        assert compare(actual, op, want) is expected


def test_compare_coerces_numeric_strings():
    assert compare("80.5", ">", 80) is True
    assert compare(5.0, "==", "5") is True


def test_compare_non_numeric_operands():
    assert compare("abc", ">", 1) is False
    assert compare("on", "==", "on") is True
    assert compare("on", "!=", "off") is True
    assert compare(True, "==", "true") is True


def test_compare_missing_operand_is_false():
    assert compare(None, ">", 1) is False
    assert compare(1, "==", None) is False
    assert compare(None, "!=", 1) is False


def test_compare_contains_only_when_allowed():
    assert compare("WWH015-east", "contains", "WWH015") is True
    assert compare("WWH015-east", "contains", "WWH015", allow_contains=False) is False


def test_compare_unknown_operator_is_false():
    assert compare(1, "~=", 1) is False


def test_as_text_matches_saved_rendering():
    assert as_text(True) == "true"
    assert as_text(5.0) == "5"
    assert as_text(5.5) == "5.5"


def test_group_and_within_or_across(telemetry, directory):
    telemetry.upsert("WWH015", {"temp_f": 80, "rh_pct": 40}, ms(2024, 1, 1, 12))
    now = ms(2024, 1, 1, 12, 0, 5)
    ctx = alert_ctx(telemetry, directory, now)

    hot_and_humid = {"tests": [{"metric": "temp_f", "value": 78}, {"metric": "rh_pct", "value": 60}]}
    hot = {"tests": [{"metric": "temp_f", "value": 78}]}

    assert evaluate_groups(groups(hot_and_humid), ctx) is False
    assert evaluate_groups(groups(hot_and_humid, hot), ctx) is True


def test_any_mode_group(telemetry, directory):
    telemetry.upsert("WWH015", {"temp_f": 70, "rh_pct": 65}, ms(2024, 1, 1))
    ctx = alert_ctx(telemetry, directory, ms(2024, 1, 1, 0, 0, 1))
    either = {"mode": "ANY", "tests": [{"metric": "temp_f", "value": 78}, {"metric": "rh_pct", "value": 60}]}
    assert evaluate_groups(groups(either), ctx) is True


def test_empty_conditions_never_match(telemetry, directory):
    telemetry.upsert("WWH015", {"temp_f": 99}, ms(2024, 1, 1))
    ctx = alert_ctx(telemetry, directory, ms(2024, 1, 1, 0, 1))
    assert evaluate_groups([], ctx) is False
    assert evaluate_groups(groups({"tests": []}), ctx) is False


def test_unknown_metric_and_missing_entity_are_false(telemetry, directory):
    telemetry.upsert("WWH015", {"temp_f": 99}, ms(2024, 1, 1))
    now = ms(2024, 1, 1, 0, 1)
    assert evaluate_groups(groups({"tests": [{"metric": "pm25", "value": 1}]}), alert_ctx(telemetry, directory, now)) is False
    assert (
        evaluate_groups(
            groups({"tests": [{"metric": "temp_f", "value": 1}]}),
            alert_ctx(telemetry, directory, now, entity="WWH999"),
        )
        is False
    )


def test_light_on_compares_as_number(telemetry, directory):
    telemetry.upsert("WWH015", {"light_on": True}, ms(2024, 1, 1))
    ctx = alert_ctx(telemetry, directory, ms(2024, 1, 1, 0, 1))
    assert evaluate_groups(groups({"tests": [{"metric": "light_on", "op": "==", "value": 1}]}), ctx) is True


def test_rule_env_test_finds_sample_through_room_mapping(telemetry, directory):
    # sensor sample stored under the device id, rule test names the room
    telemetry.upsert("dev-env-15", {"temp_f": 76}, ms(2024, 1, 1))
    ctx = rule_ctx(telemetry, directory, ms(2024, 1, 1, 0, 1))
    test = {"type": "env", "metric": "temp_f", "value": 76, "roomName": "WWH015"}
    assert evaluate_groups(groups({"tests": [test]}), ctx) is True


def test_occupancy_debounce(telemetry, directory):
    observed = ms(2024, 1, 1, 9)
    telemetry.upsert("WWH015", {"count": 3}, observed, kind=EntityKind.OCCUPANCY)
    occupied = groups(
        {"tests": [{"type": "occ", "op": ">=", "value": 1, "debounceSec": 10, "roomName": "WWH015"}]}
    )

    assert evaluate_groups(occupied, rule_ctx(telemetry, directory, observed + 5_000)) is False
    assert evaluate_groups(occupied, rule_ctx(telemetry, directory, observed + 11_000)) is True


def test_occupancy_without_debounce_uses_latest_count(telemetry, directory):
    telemetry.upsert("WWH016", {"count": 0}, ms(2024, 1, 1, 9), kind=EntityKind.OCCUPANCY)
    empty = groups({"tests": [{"type": "occ", "op": "==", "value": 0, "roomName": "WWH016"}]})
    assert evaluate_groups(empty, rule_ctx(telemetry, directory, ms(2024, 1, 1, 9))) is True


def test_time_test_repeats_every_n_days():
    test = TimeTest.model_validate({"type": "time", "startAtIso": "2024-01-01T08:00:00Z", "repeatDays": 2})

    assert evaluate_time_test(test, ms(2024, 1, 3, 8, 0, 30), tz.UTC) is True
    assert evaluate_time_test(test, ms(2024, 1, 2, 8, 0, 30), tz.UTC) is False
    assert evaluate_time_test(test, ms(2024, 1, 5, 7, 59, 10), tz.UTC) is True


def test_time_test_equality_tolerance():
    test = TimeTest.model_validate({"type": "time", "startAtIso": "2024-01-01T08:00:00Z"})
    assert evaluate_time_test(test, ms(2024, 1, 1, 8, 1, 0), tz.UTC) is True
    assert evaluate_time_test(test, ms(2024, 1, 1, 8, 2, 0), tz.UTC) is False


def test_time_test_before_anchor_never_matches():
    test = TimeTest.model_validate({"type": "time", "op": ">=", "startAtIso": "2024-01-10T08:00:00Z"})
    assert evaluate_time_test(test, ms(2024, 1, 9, 12), tz.UTC) is False


def test_time_test_ordering_operators():
    after = TimeTest.model_validate({"type": "time", "op": ">", "startAtIso": "2024-01-01T08:00:00Z"})
    before = TimeTest.model_validate({"type": "time", "op": "<", "startAtIso": "2024-01-01T08:00:00Z"})

    assert evaluate_time_test(after, ms(2024, 1, 4, 21), tz.UTC) is True
    assert evaluate_time_test(after, ms(2024, 1, 4, 7), tz.UTC) is False
    assert evaluate_time_test(before, ms(2024, 1, 4, 7), tz.UTC) is True


def test_time_test_without_anchor_is_false():
    assert evaluate_time_test(TimeTest(), ms(2024, 1, 1), tz.UTC) is False
    bad = TimeTest.model_validate({"type": "time", "startAtIso": "not a date"})
    assert evaluate_time_test(bad, ms(2024, 1, 1), tz.UTC) is False


def test_resolve_timezone():
    assert resolve_timezone("America/New_York") is not None
    with pytest.raises(RuntimeError):
        resolve_timezone("Mars/Olympus_Mons")


def test_time_test_every_other_day_from_nine():
    test = TimeTest.model_validate(
        {"type": "time", "op": ">=", "startAtIso": "2024-01-01T09:00:00Z", "repeatDays": 2}
    )

    for day in (1, 3):
        assert evaluate_time_test(test, ms(2024, 1, day, 8, 59), tz.UTC) is False
        assert evaluate_time_test(test, ms(2024, 1, day, 9, 0), tz.UTC) is True
        assert evaluate_time_test(test, ms(2024, 1, day, 23, 59, 59), tz.UTC) is True
    for hour in (0, 9, 12, 23):
        assert evaluate_time_test(test, ms(2024, 1, 2, hour), tz.UTC) is False


def test_time_test_rejects_zero_repeat_days():
    with pytest.raises(ValidationError):
        TimeTest.model_validate({"type": "time", "startAtIso": "2024-01-01T09:00:00Z", "repeatDays": 0})


def test_room_candidates_try_room_before_mapped_device(directory):
    assert list(directory.candidates(room="WWH015")) == ["WWH015", "dev-env-15"]
    assert list(directory.candidates(device_id="dev-env-16")) == ["dev-env-16", "WWH016"]
    assert list(directory.candidates(room="LAB")) == ["LAB"]
