"""
Bridge daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded hosts or credentials.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

import logging

from pydantic import field_validator
from pydantic_settings import BaseSettings

KNOWN_DEVICE_TYPES: tuple[str, ...] = ("battery", "tank", "switch", "environment")
"""Device types the bridge knows how to emulate."""


class BridgeSettings(BaseSettings):
    """Bridge daemon configuration for the Signal K to Venus OS pipeline.

    All values are loaded from environment variables. Required variables
    must be set; optional variables have sensible defaults.

    Attributes:
        venus_host: Venus OS (GX device) IP address / hostname.
        venus_port: TCP port of the Venus OS D-Bus daemon (default 78).
        signalk_base_url: Signal K server base URL (http or https).
        signalk_token: Optional bearer token for Signal K PUT/GET requests.
        poll_interval_s: Seconds between Signal K poll cycles.
        enabled_device_types: Comma-separated device types to emulate.
        history_path: JSON file holding cumulative battery history.
        history_save_interval_s: Seconds between routine history saves.
        health_path: JSON health file path.
        heartbeat_interval_s: Per-device heartbeat period.
        connection_check_interval_s: Per-device D-Bus daemon ping period.
        registration_check_interval_s: Per-device service name check period.
        creation_timeout_s: Max wait for a device another caller is creating.
        solar_current_path: Signal K path of the solar charge current.
        charger_current_path: Signal K path of the charger/alternator current.
        log_level: Root log level name.
    """

    venus_host: str
    venus_port: int = 78
    signalk_base_url: str = "http://localhost:3000"
    signalk_token: str = ""
    poll_interval_s: float = 1.0
    enabled_device_types: str = ",".join(KNOWN_DEVICE_TYPES)
    history_path: str = "/data/signalk-venus/battery-history.json"
    history_save_interval_s: int = 60
    health_path: str = "/data/signalk-venus/health.json"
    heartbeat_interval_s: float = 30.0
    connection_check_interval_s: float = 60.0
    registration_check_interval_s: float = 120.0
    creation_timeout_s: float = 5.0
    solar_current_path: str = "electrical.solar.current"
    charger_current_path: str = "electrical.chargers.current"
    log_level: str = "INFO"

    @property
    def device_types(self) -> list[str]:
        """Enabled device types as a list, in configured order."""
        return [t.strip() for t in self.enabled_device_types.split(",") if t.strip()]

    @field_validator("venus_host")
    @classmethod
    def venus_host_must_be_set(cls, v: str) -> str:
        """Reject an empty Venus OS host."""
        if not v.strip():
            raise ValueError("VENUS_HOST must not be empty")
        return v.strip()

    @field_validator("venus_port")
    @classmethod
    def venus_port_must_be_valid(cls, v: int) -> int:
        """Validate D-Bus TCP port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("VENUS_PORT must be between 1 and 65535")
        return v

    @field_validator("signalk_base_url")
    @classmethod
    def signalk_base_url_must_be_http(cls, v: str) -> str:
        """Validate the Signal K URL scheme and strip a trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(
                f"SIGNALK_BASE_URL must use http:// or https:// (got: '{v[:20]}...')"
            )
        return v.rstrip("/")

    @field_validator("poll_interval_s")
    @classmethod
    def poll_interval_must_be_reasonable(cls, v: float) -> float:
        """Minimum 0.2 s between polls to avoid hammering the Signal K server."""
        if v < 0.2:
            raise ValueError("POLL_INTERVAL_S must be >= 0.2")
        return v

    @field_validator("enabled_device_types")
    @classmethod
    def device_types_must_be_known(cls, v: str) -> str:
        """Every enabled device type must be one the bridge can emulate."""
        types = [t.strip() for t in v.split(",") if t.strip()]
        if not types:
            raise ValueError("ENABLED_DEVICE_TYPES must name at least one type")
        unknown = sorted(set(types) - set(KNOWN_DEVICE_TYPES))
        if unknown:
            raise ValueError(
                f"ENABLED_DEVICE_TYPES has unknown types {unknown}; "
                f"known: {', '.join(KNOWN_DEVICE_TYPES)}"
            )
        return v

    @field_validator("history_save_interval_s")
    @classmethod
    def save_interval_must_be_positive(cls, v: int) -> int:
        """Validate the routine save period."""
        if v < 1:
            raise ValueError("HISTORY_SAVE_INTERVAL_S must be >= 1")
        return v

    @field_validator(
        "heartbeat_interval_s",
        "connection_check_interval_s",
        "registration_check_interval_s",
        "creation_timeout_s",
    )
    @classmethod
    def intervals_must_be_positive(cls, v: float) -> float:
        """Timer periods and timeouts must be strictly positive."""
        if v <= 0:
            raise ValueError("interval and timeout settings must be > 0")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Accept only standard logging level names."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"LOG_LEVEL '{v}' is not a logging level name")
        return level

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
