"""MQTT publisher for relay commands and raw topic actions.

Publishes go through a shared, already-connected paho client whose network
loop runs on its own thread. QoS 1 publishes wait for the broker PUBACK in
an executor so the event loop is never blocked.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

RELAY_COMMAND_QOS = 1


def relay_command_topic(device_id: str) -> str:
    return f"{device_id}/switch/relay/command"


@dataclass
class MQTTResult:
    """Result of an MQTT publish attempt."""

    success: bool
    error: Optional[str] = None
    duration_ms: Optional[float] = None


class CommandPublisher(Protocol):
    async def publish_command(self, device_id: str, command: str) -> MQTTResult: ...

    async def publish_topic(self, topic: str, payload: str) -> MQTTResult: ...


class MqttCommandPublisher:
    def __init__(self, client: mqtt.Client, timeout: float = 5.0):
        self.client = client
        self.timeout = timeout

    async def publish_command(self, device_id: str, command: str) -> MQTTResult:
        payload = "ON" if command == "ON" else "OFF"
        return await self._publish(relay_command_topic(device_id), payload, qos=RELAY_COMMAND_QOS)

    async def publish_topic(self, topic: str, payload: str) -> MQTTResult:
        return await self._publish(topic, payload, qos=1)

    async def _publish(self, topic: str, payload: str, qos: int, retain: bool = False) -> MQTTResult:
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        def _publish_blocking() -> None:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise ConnectionError(mqtt.error_string(info.rc))
            info.wait_for_publish(timeout=self.timeout)
            if not info.is_published():
                raise TimeoutError(f"no PUBACK within {self.timeout}s")

        try:
            await loop.run_in_executor(None, _publish_blocking)
        except Exception as e:
            duration_ms = (loop.time() - start_time) * 1000
            logger.warning(
                "MQTT publish failed",
                extra={"topic": topic, "error_type": type(e).__name__, "error": str(e)},
            )
            return MQTTResult(success=False, error=str(e), duration_ms=duration_ms)

        duration_ms = (loop.time() - start_time) * 1000
        logger.debug("MQTT publish ok", extra={"topic": topic, "duration_ms": duration_ms})
        return MQTTResult(success=True, duration_ms=duration_ms)
