"""
Unit tests for bridge daemon configuration (BridgeSettings).

Tests verify:
- Config loads from environment variables with correct defaults.
- VENUS_HOST is required and must not be blank.
- SIGNALK_BASE_URL must be http(s) and loses a trailing slash.
- Numeric constraints are enforced (port, poll interval, timers).
- ENABLED_DEVICE_TYPES only accepts known types.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

import pytest
from pydantic import ValidationError

from bridge.src.config import KNOWN_DEVICE_TYPES, BridgeSettings


class TestBridgeSettingsLoadsFromEnv:
    """Config loads all values from environment variables."""

    def test_loads_all_env_vars(self, env_vars_full: dict[str, str]) -> None:
        """All env vars are read and assigned correctly."""
        settings = BridgeSettings()

        assert settings.venus_host == env_vars_full["VENUS_HOST"]
        assert settings.venus_port == 78
        assert settings.signalk_base_url == "https://signalk.boat.lan:3443"
        assert settings.signalk_token == env_vars_full["SIGNALK_TOKEN"]
        assert settings.poll_interval_s == 2.0
        assert settings.device_types == ["battery", "tank"]
        assert settings.history_path == env_vars_full["HISTORY_PATH"]
        assert settings.history_save_interval_s == 30
        assert settings.health_path == env_vars_full["HEALTH_PATH"]
        assert settings.heartbeat_interval_s == 15.0
        assert settings.connection_check_interval_s == 45.0
        assert settings.registration_check_interval_s == 90.0
        assert settings.creation_timeout_s == 3.0
        assert settings.solar_current_path == env_vars_full["SOLAR_CURRENT_PATH"]
        assert settings.charger_current_path == env_vars_full["CHARGER_CURRENT_PATH"]
        assert settings.log_level == "DEBUG"

    def test_defaults_applied_when_optional_vars_missing(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Optional variables use default values when not set."""
        monkeypatch.setenv("VENUS_HOST", "venus.local")
        settings = BridgeSettings()

        assert settings.venus_port == 78
        assert settings.signalk_base_url == "http://localhost:3000"
        assert settings.signalk_token == ""
        assert settings.poll_interval_s == 1.0
        assert settings.device_types == list(KNOWN_DEVICE_TYPES)
        assert settings.history_save_interval_s == 60
        assert settings.heartbeat_interval_s == 30.0
        assert settings.connection_check_interval_s == 60.0
        assert settings.registration_check_interval_s == 120.0
        assert settings.creation_timeout_s == 5.0
        assert settings.log_level == "INFO"


class TestBridgeSettingsRequiredVars:
    """Config validation rejects missing required variables."""

    def test_missing_venus_host_raises(self) -> None:
        """VENUS_HOST is required."""
        with pytest.raises(ValidationError) as exc_info:
            BridgeSettings()
        assert "venus_host" in str(exc_info.value).lower()

    def test_blank_venus_host_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A whitespace-only host is rejected."""
        monkeypatch.setenv("VENUS_HOST", "   ")
        with pytest.raises(ValidationError):
            BridgeSettings()

    def test_host_is_stripped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VENUS_HOST", " 10.0.0.2 ")
        assert BridgeSettings().venus_host == "10.0.0.2"


class TestBridgeSettingsValidation:
    """Field validators reject out-of-range values."""

    @pytest.fixture(autouse=True)
    def _host(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VENUS_HOST", "venus.local")

    @pytest.mark.parametrize("port", ["0", "65536", "-1"])
    def test_port_out_of_range(self, monkeypatch: pytest.MonkeyPatch, port: str) -> None:
        monkeypatch.setenv("VENUS_PORT", port)
        with pytest.raises(ValidationError):
            BridgeSettings()

    def test_signalk_url_requires_scheme(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A bare host without http(s) scheme is rejected."""
        monkeypatch.setenv("SIGNALK_BASE_URL", "signalk.local:3000")
        with pytest.raises(ValidationError) as exc_info:
            BridgeSettings()
        assert "SIGNALK_BASE_URL" in str(exc_info.value)

    def test_poll_interval_floor(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("POLL_INTERVAL_S", "0.1")
        with pytest.raises(ValidationError):
            BridgeSettings()

    def test_unknown_device_type_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENABLED_DEVICE_TYPES", "battery,inverter")
        with pytest.raises(ValidationError) as exc_info:
            BridgeSettings()
        assert "inverter" in str(exc_info.value)

    def test_empty_device_types_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENABLED_DEVICE_TYPES", " , ")
        with pytest.raises(ValidationError):
            BridgeSettings()

    def test_device_types_whitespace_tolerated(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENABLED_DEVICE_TYPES", " switch , environment ")
        assert BridgeSettings().device_types == ["switch", "environment"]

    @pytest.mark.parametrize(
        "var",
        [
            "HEARTBEAT_INTERVAL_S",
            "CONNECTION_CHECK_INTERVAL_S",
            "REGISTRATION_CHECK_INTERVAL_S",
            "CREATION_TIMEOUT_S",
        ],
    )
    def test_timers_must_be_positive(self, monkeypatch: pytest.MonkeyPatch, var: str) -> None:
        monkeypatch.setenv(var, "0")
        with pytest.raises(ValidationError):
            BridgeSettings()

    def test_save_interval_must_be_positive(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HISTORY_SAVE_INTERVAL_S", "0")
        with pytest.raises(ValidationError):
            BridgeSettings()

    def test_unknown_log_level_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "chatty")
        with pytest.raises(ValidationError):
            BridgeSettings()
