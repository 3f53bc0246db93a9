"""Configuration loader for the distribution engine.

Loads YAML config files with environment variable overrides.
All env vars use the DISTRIBUTION_ prefix.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from distribution_engine.circuit_breaker import CircuitBreakerConfig
from distribution_engine.errors import ConfigurationError
from distribution_engine.retry import RetryConfig

ENV_PREFIX = "DISTRIBUTION_"

# field -> (YAML section, key); None means top level
_FIELDS: dict[str, tuple[str | None, str]] = {
    "store_path": ("storage", "store_path"),
    "delivery_log_path": ("storage", "delivery_log_path"),
    "max_attempts": ("retry", "max_attempts"),
    "base_delay": ("retry", "base_delay"),
    "max_delay": ("retry", "max_delay"),
    "jitter_fraction": ("retry", "jitter_fraction"),
    "min_deferral": ("retry", "min_deferral"),
    "abandon_after": ("retry", "abandon_after"),
    "circuit_failure_threshold": ("circuit", "failure_threshold"),
    "circuit_window": ("circuit", "window"),
    "circuit_cooldown": ("circuit", "cooldown"),
    "publish_timeout": ("dispatch", "publish_timeout"),
    "lease_grace": ("dispatch", "lease_grace"),
    "workers": ("dispatch", "workers"),
    "poll_interval": ("dispatch", "poll_interval"),
    "sweep_interval": ("dispatch", "sweep_interval"),
    "live_mode": (None, "live_mode"),
    "log_level": (None, "log_level"),
}


@dataclass
class EngineConfig:
    """Unified configuration for all engine components."""
    store_path: str = "distribution_jobs.json"
    delivery_log_path: str = "delivery_log.json"
    max_attempts: int = 3
    base_delay: float = 30.0
    max_delay: float = 3600.0
    jitter_fraction: float = 0.1
    min_deferral: float = 60.0
    abandon_after: float | None = None
    circuit_failure_threshold: int = 5
    circuit_window: float = 300.0
    circuit_cooldown: float = 120.0
    publish_timeout: float = 30.0
    lease_grace: float = 120.0
    workers: int = 4
    poll_interval: float = 5.0
    sweep_interval: float = 60.0
    live_mode: bool = False
    log_level: str = "INFO"
    channels: dict[str, dict[str, Any]] = field(default_factory=dict)

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter_fraction=self.jitter_fraction,
            min_deferral=self.min_deferral,
            abandon_after=self.abandon_after,
        )

    def circuit_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            window=self.circuit_window,
            cooldown=self.circuit_cooldown,
            probe_timeout=self.publish_timeout + self.lease_grace,
        )

    def validate(self) -> None:
        if self.publish_timeout <= 0:
            raise ConfigurationError("publish_timeout must be positive")
        if self.lease_grace < 0:
            raise ConfigurationError("lease_grace must not be negative")
        if self.workers < 1:
            raise ConfigurationError("workers must be at least 1")
        if self.poll_interval <= 0 or self.sweep_interval <= 0:
            raise ConfigurationError("poll_interval and sweep_interval must be positive")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(f"Unknown log_level {self.log_level!r}")
        self.retry_config().validate()
        self.circuit_config().validate()


def load_config(path: Path | None = None) -> EngineConfig:
    """Load config from YAML file with env var overrides.

    Env vars override YAML values. Each setting maps to
    DISTRIBUTION_<FIELD>, for example:
      DISTRIBUTION_STORE_PATH → storage.store_path
      DISTRIBUTION_MAX_ATTEMPTS → retry.max_attempts
      DISTRIBUTION_CIRCUIT_COOLDOWN → circuit.cooldown
      DISTRIBUTION_PUBLISH_TIMEOUT → dispatch.publish_timeout
      DISTRIBUTION_LIVE_MODE → live_mode
    String channel settings can be overridden the same way, e.g.
    DISTRIBUTION_DISCORD_URL → channels.discord.url.

    Raises:
        ConfigurationError: If the file cannot be parsed or a value is invalid.
    """
    raw: dict[str, Any] = {}
    if path and path.exists():
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")

    defaults = EngineConfig()
    values: dict[str, Any] = {}
    for name, (section, key) in _FIELDS.items():
        source = _section(raw, section) if section else raw
        value = os.environ.get(f"{ENV_PREFIX}{name.upper()}", source.get(key, getattr(defaults, name)))
        values[name] = _coerce(name, value, getattr(defaults, name))

    channels = raw.get("channels") or {}
    if not isinstance(channels, dict):
        raise ConfigurationError("channels must be a mapping of channel name to settings")
    resolved: dict[str, dict[str, Any]] = {}
    for channel, settings in channels.items():
        if not isinstance(settings, dict):
            raise ConfigurationError(f"Settings for channel {channel!r} must be a mapping")
        resolved[str(channel)] = {
            key: _env_or(f"{channel}_{key}".upper(), value) if isinstance(value, str) else value
            for key, value in settings.items()
        }

    cfg = EngineConfig(channels=resolved, **values)
    cfg.validate()
    return cfg


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Section {name!r} must be a mapping")
    return section


def _coerce(name: str, value: Any, default: Any) -> Any:
    try:
        if name == "abandon_after":
            if value is None or str(value).strip().lower() in ("", "none", "null"):
                return None
            return float(value)
        if isinstance(default, bool):
            return _to_bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}") from exc


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("true", "1", "yes")


def _env_or(suffix: str, default: str) -> str:
    return os.environ.get(f"{ENV_PREFIX}{suffix}", default)
