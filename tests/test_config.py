from __future__ import annotations

import pytest

from contextcore_relay.config import RelayConfig, configure, get_config, reset_config


def test_defaults() -> None:
    config = RelayConfig()
    assert config.default_stage_timeout == 600
    assert config.secret_prefix == "RELAY_SECRET_"
    assert config.inherit_env is True
    assert config.telemetry_enabled is False


def test_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RELAY_STAGE_TIMEOUT", "90")
    monkeypatch.setenv("RELAY_INHERIT_ENV", "false")
    monkeypatch.setenv("RELAY_NOTIFY_RECIPIENTS", "a@example.com, b@example.com,")
    monkeypatch.setenv("RELAY_TELEMETRY_ENABLED", "true")

    config = RelayConfig.from_env()

    assert config.default_stage_timeout == 90
    assert config.inherit_env is False
    assert config.notify_recipients == ["a@example.com", "b@example.com"]
    assert config.telemetry_enabled is True


def test_configure_overrides_and_caches() -> None:
    config = configure(webhook_url="https://hook", kill_grace_seconds=2.5, unknown_key="ignored")

    assert get_config() is config
    assert config.webhook_url == "https://hook"
    assert config.kill_grace_seconds == 2.5
    assert not hasattr(config, "unknown_key")


def test_reset_config_rereads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    first = get_config()
    monkeypatch.setenv("RELAY_LOG_LEVEL", "DEBUG")
    reset_config()

    assert get_config() is not first
    assert get_config().log_level == "DEBUG"
