"""Factory for building a wired Distributor from EngineConfig.

Shared by the CLI and by embedding applications so that connectors, the job
store, breakers and the retry policy are constructed in one place.
"""

from __future__ import annotations

import random
from pathlib import Path
from typing import Any

from distribution_engine.circuit_breaker import CircuitBreakerRegistry
from distribution_engine.clock import Clock, SystemClock
from distribution_engine.config import EngineConfig
from distribution_engine.connectors import (
    ChannelConnector,
    ConnectorRegistry,
    MastodonConfig,
    MastodonConnector,
    WebhookConfig,
    WebhookConnector,
)
from distribution_engine.delivery_log import DeliveryLog
from distribution_engine.dispatcher import Dispatcher
from distribution_engine.distributor import Distributor
from distribution_engine.errors import ConfigurationError
from distribution_engine.retry import RetryPolicy
from distribution_engine.store import JobStore, LocalJobStore
from distribution_engine.worker import WorkerPool


def build_connector(channel: str, settings: dict[str, Any], live: bool = False) -> ChannelConnector:
    """Build one connector from a channel's settings block.

    The ``type`` key picks the connector (``webhook`` by default).
    """
    kind = settings.get("type", "webhook")
    if kind == "webhook":
        if not settings.get("url"):
            raise ConfigurationError(f"Webhook channel {channel!r} needs a url")
        return WebhookConnector(
            WebhookConfig(url=settings["url"], headers=dict(settings.get("headers") or {})),
            live=live,
        )
    if kind == "mastodon":
        if not settings.get("instance_url"):
            raise ConfigurationError(f"Mastodon channel {channel!r} needs an instance_url")
        return MastodonConnector(
            MastodonConfig(
                instance_url=settings["instance_url"].rstrip("/"),
                access_tokens=dict(settings.get("access_tokens") or {}),
                visibility=settings.get("visibility", "public"),
                max_chars=int(settings.get("max_chars", 500)),
            ),
            live=live,
        )
    raise ConfigurationError(f"Unknown connector type {kind!r} for channel {channel!r}")


def build_connectors(cfg: EngineConfig) -> ConnectorRegistry:
    registry = ConnectorRegistry()
    for channel, settings in cfg.channels.items():
        registry.register(channel, build_connector(channel, settings, live=cfg.live_mode))
    return registry


def build_store(cfg: EngineConfig) -> LocalJobStore:
    log_path = Path(cfg.delivery_log_path) if cfg.delivery_log_path else None
    store_path = Path(cfg.store_path) if cfg.store_path else None
    return LocalJobStore(store_path, DeliveryLog(log_path))


def build_distributor(
    cfg: EngineConfig,
    store: JobStore | None = None,
    connectors: ConnectorRegistry | None = None,
    clock: Clock | None = None,
    rng: random.Random | None = None,
) -> Distributor:
    """Build a Distributor from an EngineConfig.

    Args:
        cfg: Engine configuration.
        store: Optional pre-built job store. If None, a LocalJobStore is
            constructed from cfg.store_path and cfg.delivery_log_path.
        connectors: Optional pre-built registry. If None, connectors are
            built from cfg.channels.
        clock: Time source shared by every component.
        rng: Random source for retry jitter.

    Returns:
        A fully wired Distributor.
    """
    clock = clock or SystemClock()
    if store is None:
        store = build_store(cfg)
    if connectors is None:
        connectors = build_connectors(cfg)

    dispatcher = Dispatcher(
        store=store,
        connectors=connectors,
        breakers=CircuitBreakerRegistry(connectors.channels, cfg.circuit_config(), clock.monotonic),
        policy=RetryPolicy(cfg.retry_config(), rng),
        clock=clock,
        publish_timeout=cfg.publish_timeout,
        lease_grace=cfg.lease_grace,
        max_concurrent_publishes=cfg.workers * 2,
    )
    return Distributor(store, dispatcher, clock)


def build_worker_pool(cfg: EngineConfig, distributor: Distributor) -> WorkerPool:
    return WorkerPool(
        distributor.dispatcher,
        workers=cfg.workers,
        poll_interval=cfg.poll_interval,
        sweep_interval=cfg.sweep_interval,
    )
