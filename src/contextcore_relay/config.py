"""
Configuration management for ContextCore Relay.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

_config: Optional["RelayConfig"] = None


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class RelayConfig:
    """Configuration for ContextCore Relay."""

    # Stage execution
    default_stage_timeout: float = 600.0
    kill_grace_seconds: float = 5.0
    max_output_bytes: int = 1_000_000
    inherit_env: bool = True

    # Secret sources
    secret_prefix: str = "RELAY_SECRET_"
    secrets_dir: Optional[str] = None

    # Notification
    webhook_url: Optional[str] = None
    notify_recipients: List[str] = field(default_factory=list)
    notify_timeout: float = 10.0
    build_url: Optional[str] = None

    # Telemetry
    telemetry_enabled: bool = False
    otel_service_name: str = "contextcore-relay"

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Create configuration from environment variables."""
        return cls(
            default_stage_timeout=float(os.getenv("RELAY_STAGE_TIMEOUT", "600")),
            kill_grace_seconds=float(os.getenv("RELAY_KILL_GRACE", "5")),
            max_output_bytes=int(os.getenv("RELAY_MAX_OUTPUT_BYTES", "1000000")),
            inherit_env=_env_bool("RELAY_INHERIT_ENV", "true"),
            secret_prefix=os.getenv("RELAY_SECRET_PREFIX", "RELAY_SECRET_"),
            secrets_dir=os.getenv("RELAY_SECRETS_DIR"),
            webhook_url=os.getenv("RELAY_WEBHOOK_URL"),
            notify_recipients=_env_list("RELAY_NOTIFY_RECIPIENTS"),
            notify_timeout=float(os.getenv("RELAY_NOTIFY_TIMEOUT", "10")),
            build_url=os.getenv("RELAY_BUILD_URL"),
            telemetry_enabled=_env_bool("RELAY_TELEMETRY_ENABLED"),
            otel_service_name=os.getenv("RELAY_OTEL_SERVICE_NAME", "contextcore-relay"),
            log_level=os.getenv("RELAY_LOG_LEVEL", "INFO"),
        )


def configure(
    default_stage_timeout: Optional[float] = None,
    secrets_dir: Optional[str] = None,
    webhook_url: Optional[str] = None,
    telemetry_enabled: Optional[bool] = None,
    log_level: Optional[str] = None,
    **kwargs,
) -> RelayConfig:
    """
    Configure ContextCore Relay.

    Args:
        default_stage_timeout: Timeout applied to stages that declare none
        secrets_dir: Directory holding file-backed secrets
        webhook_url: Endpoint receiving the final run report
        telemetry_enabled: Emit OpenTelemetry spans for runs and stages
        log_level: Logging level
        **kwargs: Any other RelayConfig field

    Returns:
        The configured RelayConfig instance
    """
    global _config

    config = RelayConfig.from_env()

    if default_stage_timeout is not None:
        config.default_stage_timeout = default_stage_timeout
    if secrets_dir is not None:
        config.secrets_dir = secrets_dir
    if webhook_url is not None:
        config.webhook_url = webhook_url
    if telemetry_enabled is not None:
        config.telemetry_enabled = telemetry_enabled
    if log_level is not None:
        config.log_level = log_level

    for key, value in kwargs.items():
        if hasattr(config, key) and value is not None:
            setattr(config, key, value)

    _config = config
    return config


def get_config() -> RelayConfig:
    """Get the current configuration."""
    global _config
    if _config is None:
        _config = RelayConfig.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment."""
    global _config
    _config = None


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the configured log level to the root logger."""
    name = (level or get_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
