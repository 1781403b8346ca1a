"""Tests for orchestrator settings validation."""

from __future__ import annotations

import pytest

from nodestack.config import SettingsLoadError, config_load_settings


def test_config_load_settings_normalizes_values() -> None:
    """Normalize enum-like settings and keep explicit overrides."""

    settings = config_load_settings(
        log_level="debug",
        network_violation_action="STOP",
        tls_failure_policy="Take-Offline",
        overlay_network_cidr="10.77.0.9/24",
    )

    assert settings.log_level == "DEBUG"
    assert settings.network_violation_action == "stop"
    assert settings.tls_failure_policy == "take-offline"
    assert settings.overlay_network_cidr == "10.77.0.0/24"


@pytest.mark.parametrize(
    "overrides",
    [
        {"overlay_network_cidr": "8.8.8.0/24"},
        {"network_violation_action": "ignore"},
        {"tls_reload_signal": "SIGNOPE"},
        {"restart_backoff_floor_seconds": 10.0, "restart_backoff_max_seconds": 5.0},
    ],
)
def test_config_load_settings_rejects_invalid_values(overrides: dict[str, object]) -> None:
    """Wrap validation failures into a startup configuration error.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when invalid settings are accepted.
    """

    with pytest.raises(SettingsLoadError):
        config_load_settings(**overrides)
