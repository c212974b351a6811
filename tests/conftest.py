import os
import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).resolve().parent.parent
services_path = repo_root / "services"
if str(services_path) not in sys.path:
    sys.path.insert(0, str(services_path))

os.environ.setdefault("LOG_LEVEL", "DEBUG")

from condition_engine.mqtt_sender import MQTTResult  # noqa: E402
from condition_engine.state import ActuatorStateStore, EntityDirectory, TelemetryStateStore  # noqa: E402
from condition_engine.store import InMemoryDefinitionStore  # noqa: E402


class FakePublisher:
    """Records publishes; flip `fail` to simulate a broker outage."""

    def __init__(self):
        self.commands: list[tuple[str, str]] = []
        self.topics: list[tuple[str, str]] = []
        self.fail = False

    async def publish_command(self, device_id, command):
        self.commands.append((device_id, command))
        if self.fail:
            return MQTTResult(success=False, error="broker unavailable")
        return MQTTResult(success=True)

    async def publish_topic(self, topic, payload):
        self.topics.append((topic, payload))
        if self.fail:
            return MQTTResult(success=False, error="broker unavailable")
        return MQTTResult(success=True)


@pytest.fixture
def telemetry():
    return TelemetryStateStore()


@pytest.fixture
def actuators():
    return ActuatorStateStore()


@pytest.fixture
def directory():
    return EntityDirectory({"WWH015": "dev-env-15", "WWH016": "dev-env-16"})


@pytest.fixture
def store():
    return InMemoryDefinitionStore()


@pytest.fixture
def publisher():
    return FakePublisher()
