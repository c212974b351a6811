import json
import os
from dataclasses import dataclass, field


def require_env(name: str) -> str:
    """
    Read a required environment variable.
    Raises RuntimeError at startup if the variable is absent or empty.
    """
    value = os.environ.get(name, "").strip()
    if not value:
        raise RuntimeError(
            f"Required environment variable '{name}' is not set. "
            "Set it before starting the service."
        )
    return value


def optional_env(name: str, default: str = "") -> str:
    """Read an optional environment variable with a default."""
    return os.environ.get(name, default)


def float_env(name: str, default: float) -> float:
    raw = optional_env(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be a number, got {raw!r}")


def int_env(name: str, default: int) -> int:
    raw = optional_env(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be an integer, got {raw!r}")


def json_env(name: str, default=None):
    raw = optional_env(name, "").strip()
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Environment variable '{name}' is not valid JSON: {exc}")


@dataclass(frozen=True)
class EngineSettings:
    """Runtime configuration for the condition engine service."""

    alert_tick_seconds: float = 2.0
    rule_tick_seconds: float = 3.0
    io_timeout_seconds: float = 5.0
    definition_refresh_seconds: float = 10.0
    timezone: str = ""
    mqtt_broker_url: str = "mqtt://localhost:1883"
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_site_prefix: str = "dt/dt-lab"
    room_device_map: dict[str, str] = field(default_factory=dict)
    database_url: str | None = None
    health_port: int = 8080

    @classmethod
    def from_env(cls) -> "EngineSettings":
        room_map = json_env("ROOM_DEVICE_MAP", {}) or {}
        if not isinstance(room_map, dict):
            raise RuntimeError("ROOM_DEVICE_MAP must be a JSON object of room -> device id")
        settings = cls(
            alert_tick_seconds=float_env("ALERT_TICK_SECONDS", 2.0),
            rule_tick_seconds=float_env("RULE_TICK_SECONDS", 3.0),
            io_timeout_seconds=float_env("IO_TIMEOUT_SECONDS", 5.0),
            definition_refresh_seconds=float_env("DEFINITION_REFRESH_SECONDS", 10.0),
            timezone=optional_env("ENGINE_TIMEZONE", ""),
            mqtt_broker_url=optional_env("MQTT_BROKER_URL", "mqtt://localhost:1883"),
            mqtt_username=optional_env("MQTT_USERNAME") or None,
            mqtt_password=optional_env("MQTT_PASSWORD") or None,
            mqtt_site_prefix=optional_env("MQTT_SITE_PREFIX", "dt/dt-lab").rstrip("/"),
            room_device_map={str(k): str(v) for k, v in room_map.items()},
            database_url=optional_env("DATABASE_URL") or None,
            health_port=int_env("HEALTH_PORT", 8080),
        )
        if settings.alert_tick_seconds <= 0 or settings.rule_tick_seconds <= 0:
            raise RuntimeError("Tick periods must be positive")
        return settings
