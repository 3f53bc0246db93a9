"""Shared fixtures: a manual clock, scripted connectors and engine wiring."""

from __future__ import annotations

import pytest

from distribution_engine.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from distribution_engine.clock import ManualClock
from distribution_engine.connectors import ConnectorRegistry, PublishReceipt, normalize_exception
from distribution_engine.dispatcher import Dispatcher
from distribution_engine.distributor import Distributor
from distribution_engine.retry import RetryConfig, RetryPolicy
from distribution_engine.store import LocalJobStore


class ScriptedConnector:
    """Connector that plays back queued outcomes, then succeeds.

    An outcome is an exception instance (raised), a callable (called and its
    return value used as the receipt) or None (default success).
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def publish(self, snapshot, account_ref, customization, *, timeout, idempotency_key):
        self.calls.append({
            "content_id": snapshot.content_id,
            "account_ref": account_ref,
            "customization": customization,
            "idempotency_key": idempotency_key,
        })
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome()
        return PublishReceipt(external_id=f"{account_ref}-{len(self.calls)}")

    def normalize_error(self, exc):
        return normalize_exception(exc)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scripted():
    return ScriptedConnector


@pytest.fixture
def build_engine(clock):
    """Wire a Distributor around the given connectors with jitter disabled."""
    dispatchers = []

    def _build(connectors, store=None, retry=None, circuit=None, publish_timeout=30.0, worker_token="w1",
               max_concurrent_publishes=8):
        registry = ConnectorRegistry(connectors)
        store = store if store is not None else LocalJobStore()
        dispatcher = Dispatcher(
            store,
            registry,
            CircuitBreakerRegistry(registry.channels, circuit or CircuitBreakerConfig(), clock.monotonic),
            RetryPolicy(retry or RetryConfig(jitter_fraction=0.0)),
            clock,
            publish_timeout=publish_timeout,
            worker_token=worker_token,
            max_concurrent_publishes=max_concurrent_publishes,
        )
        dispatchers.append(dispatcher)
        return Distributor(store, dispatcher)

    yield _build
    for dispatcher in dispatchers:
        dispatcher.close()
