"""MQTT -> engine bridge.

Subscribes to the site telemetry topics and feeds every decoded message to
the ingest handler. Runs on paho's network thread; the handler only writes
to lock-guarded in-memory stores, so nothing here touches the event loop.
"""
from __future__ import annotations

import logging
import ssl
import uuid
from typing import Optional
from urllib.parse import urlparse

import paho.mqtt.client as paho_mqtt

from condition_engine.ingest import IngestHandler, subscription_topics
from condition_engine.state import EntityDirectory

logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883, "ws": 80, "wss": 443}


def parse_broker_url(url: str) -> tuple[str, int, str, bool]:
    """Return (host, port, transport, tls) for an mqtt://, mqtts://, ws:// or wss:// URL."""
    parsed = urlparse(url if "://" in url else f"mqtt://{url}")
    scheme = (parsed.scheme or "mqtt").lower()
    if scheme not in _DEFAULT_PORTS:
        raise RuntimeError(f"Unsupported MQTT broker URL scheme {scheme!r}")
    host = parsed.hostname or "localhost"
    port = parsed.port or _DEFAULT_PORTS[scheme]
    transport = "websockets" if scheme in ("ws", "wss") else "tcp"
    tls = scheme in ("mqtts", "ssl", "wss")
    return host, port, transport, tls


def create_client(
    broker_url: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    client_id: Optional[str] = None,
) -> tuple[paho_mqtt.Client, str, int]:
    """Build an unconnected paho client shared by ingestion and command publishing."""
    host, port, transport, tls = parse_broker_url(broker_url)
    client = paho_mqtt.Client(
        paho_mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id or f"condition-engine-{uuid.uuid4().hex[:8]}",
        transport=transport,
    )
    if username:
        client.username_pw_set(username, password)
    if tls:
        client.tls_set(tls_version=ssl.PROTOCOL_TLS_CLIENT)
    client.reconnect_delay_set(min_delay=1, max_delay=30)
    return client, host, port


class MqttBridge:
    def __init__(
        self,
        handler: IngestHandler,
        client: paho_mqtt.Client,
        host: str,
        port: int,
        site_prefix: str = "dt/dt-lab",
        directory: Optional[EntityDirectory] = None,
    ):
        self.handler = handler
        self.client = client
        self.host = host
        self.port = port
        self.site_prefix = site_prefix.rstrip("/")
        self.directory = directory or EntityDirectory()
        self.connected = False
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

    @property
    def topics(self) -> list[str]:
        return subscription_topics(self.site_prefix)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.warning("mqtt connect refused", extra={"reason": str(reason_code)})
            return
        self.connected = True
        logger.info("mqtt connected", extra={"host": self.host, "port": self.port, "topics": self.topics})
        for topic in self.topics:
            client.subscribe(topic, qos=0)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self.connected = False
        logger.warning("mqtt disconnected", extra={"reason": str(reason_code)})

    def _on_message(self, client, userdata, msg):
        try:
            self.handler.on_message(self.site_prefix, msg.topic, msg.payload, self.directory)
        except Exception:
            logger.exception("mqtt message handling failed", extra={"topic": msg.topic})

    def start(self) -> None:
        """Connect in the background; paho keeps reconnecting on its own thread."""
        self.client.connect_async(self.host, self.port, keepalive=60)
        self.client.loop_start()

    def stop(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()
        self.connected = False
