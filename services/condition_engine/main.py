"""Condition engine service entrypoint.

Wires MQTT ingestion, the two tick loops and the health/metrics server
around one Definition Store.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from condition_engine.alerts import AlertScheduler
from condition_engine.breach import BreachTracker
from condition_engine.conditions import resolve_timezone
from condition_engine.ingest import IngestHandler
from condition_engine.mqtt_bridge import MqttBridge, create_client
from condition_engine.mqtt_sender import CommandPublisher, MqttCommandPublisher
from condition_engine.notifications import BadgeCounter
from condition_engine.rules import RuleScheduler
from condition_engine.state import ActuatorStateStore, EntityDirectory, TelemetryStateStore
from condition_engine.store import InMemoryDefinitionStore, PostgresDefinitionStore
from shared.config import EngineSettings
from shared.logging import configure_logging, log_event

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: EngineSettings
    store: object
    telemetry: TelemetryStateStore
    actuators: ActuatorStateStore
    directory: EntityDirectory
    ingest: IngestHandler
    badge: BadgeCounter
    alerts: AlertScheduler
    rules: RuleScheduler

    def health(self) -> dict:
        return {
            "status": "healthy",
            "service": "condition_engine",
            "counters": {
                "samples_accepted": self.ingest.accepted,
                "samples_rejected": self.ingest.rejected,
                "alert_definitions": len(self.alerts.definitions),
                "rule_definitions": len(self.rules.definitions),
                "open_alert_events": self.badge.count,
                "pending_side_effects": self.alerts.effects.pending + self.rules.effects.pending,
            },
            "last_alert_tick_at": self.alerts.last_tick_at,
            "last_rule_tick_at": self.rules.last_tick_at,
        }


def build_engine(settings: EngineSettings, store, publisher: CommandPublisher) -> Engine:
    telemetry = TelemetryStateStore()
    actuators = ActuatorStateStore()
    directory = EntityDirectory(settings.room_device_map)
    zone = resolve_timezone(settings.timezone)
    badge = BadgeCounter(store)
    common = dict(
        directory=directory,
        timezone=zone,
        io_timeout_seconds=settings.io_timeout_seconds,
        refresh_seconds=settings.definition_refresh_seconds,
    )
    alerts = AlertScheduler(
        store,
        telemetry,
        badge,
        tracker=BreachTracker(),
        tick_seconds=settings.alert_tick_seconds,
        **common,
    )
    rules = RuleScheduler(
        store,
        telemetry,
        actuators,
        publisher,
        tick_seconds=settings.rule_tick_seconds,
        **common,
    )
    return Engine(
        settings=settings,
        store=store,
        telemetry=telemetry,
        actuators=actuators,
        directory=directory,
        ingest=IngestHandler(telemetry, actuators),
        badge=badge,
        alerts=alerts,
        rules=rules,
    )


def make_health_app(engine: Engine) -> web.Application:
    async def health_handler(request):
        return web.json_response(engine.health())

    async def metrics_handler(_request):
        return web.Response(body=generate_latest(), content_type=CONTENT_TYPE_LATEST.split(";")[0])

    app = web.Application()
    app.router.add_get("/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)
    return app


async def start_health_server(engine: Engine) -> web.AppRunner:
    runner = web.AppRunner(make_health_app(engine))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", engine.settings.health_port)
    await site.start()
    log_event(logger, "health server started", service_port=engine.settings.health_port)
    return runner


async def open_store(settings: EngineSettings):
    if settings.database_url:
        return await PostgresDefinitionStore.connect(settings.database_url)
    log_event(logger, "DATABASE_URL not set, definitions kept in memory", level="WARNING")
    return InMemoryDefinitionStore()


async def main(settings: Optional[EngineSettings] = None) -> None:
    settings = settings or EngineSettings.from_env()
    store = await open_store(settings)

    client, host, port = create_client(
        settings.mqtt_broker_url,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
    )
    publisher = MqttCommandPublisher(client, timeout=settings.io_timeout_seconds)
    engine = build_engine(settings, store, publisher)
    bridge = MqttBridge(
        engine.ingest,
        client,
        host,
        port,
        site_prefix=settings.mqtt_site_prefix,
        directory=engine.directory,
    )

    runner = await start_health_server(engine)
    await engine.badge.refresh()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    bridge.start()
    log_event(
        logger,
        "condition engine started",
        broker=settings.mqtt_broker_url,
        site_prefix=settings.mqtt_site_prefix,
        rooms=engine.directory.rooms(),
    )
    try:
        await asyncio.gather(
            engine.alerts.run_forever(stop),
            engine.rules.run_forever(stop),
        )
    finally:
        bridge.stop()
        await runner.cleanup()
        close = getattr(store, "close", None)
        if close is not None:
            await close()
        log_event(logger, "condition engine stopped")


if __name__ == "__main__":
    configure_logging("condition_engine")
    asyncio.run(main())
