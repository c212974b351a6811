import json

import pytest

from condition_engine.ingest import (
    IngestHandler,
    decode_message,
    subscription_topics,
    to_ms,
    topic_extract,
)
from condition_engine.models import EntityKind

pytestmark = [pytest.mark.unit]

PREFIX = "dt/dt-lab"
NOW = 1_704_096_000_000


@pytest.fixture
def handler(telemetry, actuators):
    return IngestHandler(telemetry, actuators)


def test_to_ms_normalises_seconds_and_milliseconds():
    assert to_ms(1_704_096_000, NOW) == 1_704_096_000_000
    assert to_ms(1_704_096_000_123, NOW) == 1_704_096_000_123
    assert to_ms("1704096000", NOW) == 1_704_096_000_000
    assert to_ms(None, NOW) == NOW
    assert to_ms("soon", NOW) == NOW
    assert to_ms(True, NOW) == NOW


def test_topic_extract():
    assert topic_extract(PREFIX, "dt/dt-lab/dev-env-15/telemetry") == ("dev-env-15", "telemetry")
    assert topic_extract(PREFIX, "dt/dt-lab/plug-1/switch/relay/state") == ("plug-1", "switch/relay/state")
    assert topic_extract(PREFIX, "other/site/dev/telemetry") == (None, None)
    assert topic_extract(PREFIX, "dt/dt-lab/dev-only") == (None, None)


def test_subscription_topics():
    assert subscription_topics("dt/dt-lab/") == [
        "dt/dt-lab/+/telemetry",
        "dt/dt-lab/+/count",
        "dt/dt-lab/+/switch/relay/state",
    ]


def test_decode_telemetry_maps_device_to_room(directory):
    payload = json.dumps({"temp_f": "72.5", "rh_pct": 40, "light_on": 1, "ts": 1_704_096_000}).encode()
    sample = decode_message(PREFIX, "dt/dt-lab/dev-env-15/telemetry", payload, directory, now_ms=NOW)

    assert sample.kind is EntityKind.SENSOR
    assert sample.entity_id == "WWH015"
    assert sample.ts_ms == 1_704_096_000_000
    assert sample.fields == {
        "temp_f": 72.5,
        "rh_pct": 40.0,
        "tvoc_ppb": None,
        "eco2_ppm": None,
        "light_on": True,
    }


def test_decode_telemetry_unmapped_device_keeps_device_id(directory):
    sample = decode_message(PREFIX, "dt/dt-lab/dev-x/telemetry", b'{"temp_f": 70}', directory, now_ms=NOW)
    assert sample.entity_id == "dev-x"
    assert sample.ts_ms == NOW
    assert sample.fields["light_on"] is None


def test_decode_count_uses_room_from_payload():
    payload = json.dumps({"room": "WWH016", "count": "4", "t": 1_704_096_000_500}).encode()
    sample = decode_message(PREFIX, "dt/dt-lab/cam-2/count", payload, now_ms=NOW)

    assert sample.kind is EntityKind.OCCUPANCY
    assert sample.entity_id == "WWH016"
    assert sample.fields == {"count": 4}
    assert sample.ts_ms == 1_704_096_000_500


@pytest.mark.parametrize(
    "payload",
    [
        b'{"count": 3}',
        b'{"room": 12, "count": 3}',
        b'{"room": "WWH016", "count": "many"}',
        b"not json",
        b"[1, 2]",
    ],
)
def test_decode_count_rejects_malformed(payload):
    assert decode_message(PREFIX, "dt/dt-lab/cam-2/count", payload, now_ms=NOW) is None


def test_decode_relay_state():
    sample = decode_message(PREFIX, "dt/dt-lab/plug-1/switch/relay/state", b" on \n", now_ms=NOW)
    assert sample.kind is EntityKind.ACTUATOR
    assert sample.entity_id == "plug-1"
    assert sample.fields == {"relay": "ON"}
    assert sample.ts_ms == NOW

    assert decode_message(PREFIX, "dt/dt-lab/plug-1/switch/relay/state", b"TOGGLE", now_ms=NOW) is None


def test_decode_unknown_topic_is_dropped():
    assert decode_message(PREFIX, "dt/dt-lab/plug-1/power", b"12.5", now_ms=NOW) is None


def test_on_sample_replaces_snapshot_wholesale(handler, telemetry):
    assert handler.on_sample("sensor", "WWH015", {"temp_f": 70, "rh_pct": 40}, NOW) is True
    assert handler.on_sample("sensor", "WWH015", {"temp_f": 71}, NOW + 1_000) is True

    sample = telemetry.get("WWH015")
    assert sample.fields == {"temp_f": 71}
    assert sample.observed_at == NOW + 1_000


def test_occupancy_and_sensor_samples_do_not_overwrite_each_other(handler, telemetry):
    handler.on_sample("sensor", "WWH015", {"temp_f": 70}, NOW)
    handler.on_sample(EntityKind.OCCUPANCY, "WWH015", {"count": 2}, NOW)

    assert telemetry.get("WWH015").fields == {"temp_f": 70}
    assert telemetry.get("WWH015", EntityKind.OCCUPANCY).fields == {"count": 2}
    assert telemetry.entities() == ["WWH015"]


def test_actuator_sample_updates_confirmed_state(handler, actuators):
    assert handler.on_sample("actuator", "plug-1", {"relay": "off"}, NOW) is True
    assert actuators.last_known_command("plug-1") == "OFF"


@pytest.mark.parametrize(
    "kind, entity_id, fields, ts",
    [
        ("thermostat", "WWH015", {}, NOW),
        ("sensor", "", {"temp_f": 70}, NOW),
        ("sensor", "WWH015", ["temp_f", 70], NOW),
        ("sensor", "WWH015", {"temp_f": 70}, float("nan")),
        ("occupancy", "WWH015", {"count": None}, NOW),
        ("actuator", "plug-1", {"relay": "HALF"}, NOW),
    ],
)
def test_malformed_samples_are_dropped(handler, telemetry, actuators, kind, entity_id, fields, ts):
    assert handler.on_sample(kind, entity_id, fields, ts) is False
    assert telemetry.entities() == []
    assert actuators.get("plug-1") is None
    assert handler.rejected == 1


def test_on_message_counts_undecodable(handler, directory):
    assert handler.on_message(PREFIX, "dt/dt-lab/dev-env-15/telemetry", b"{broken", directory) is False
    assert handler.on_message(PREFIX, "dt/dt-lab/dev-env-15/telemetry", b'{"temp_f": 75}', directory) is True
    assert handler.rejected == 1
    assert handler.accepted == 1
