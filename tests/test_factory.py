"""Tests for building a wired engine from configuration."""

import pytest

from distribution_engine.config import EngineConfig
from distribution_engine.connectors import MastodonConnector, WebhookConnector
from distribution_engine.distributor import Distributor
from distribution_engine.errors import ConfigurationError
from distribution_engine.factory import (
    build_connector,
    build_connectors,
    build_distributor,
    build_worker_pool,
)
from distribution_engine.models import JobState, Target
from distribution_engine.store import LocalJobStore


def _config(tmp_path, **kwargs):
    kwargs.setdefault("store_path", str(tmp_path / "jobs.json"))
    kwargs.setdefault("delivery_log_path", str(tmp_path / "log.json"))
    return EngineConfig(**kwargs)


class TestBuildConnector:
    def test_webhook_is_default(self):
        connector = build_connector("discord", {"url": "https://discord.com/api/webhooks/x"})
        assert isinstance(connector, WebhookConnector)

    def test_mastodon(self):
        connector = build_connector("mastodon", {
            "type": "mastodon",
            "instance_url": "https://mastodon.social/",
            "access_tokens": {"main": "tok"},
        })
        assert isinstance(connector, MastodonConnector)
        assert connector.config.instance_url == "https://mastodon.social"

    def test_missing_url(self):
        with pytest.raises(ConfigurationError):
            build_connector("discord", {"type": "webhook"})

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError, match="carrier-pigeon"):
            build_connector("birds", {"type": "carrier-pigeon"})


class TestBuildDistributor:
    def test_build_with_empty_config(self, tmp_path):
        dist = build_distributor(_config(tmp_path))
        assert isinstance(dist, Distributor)
        assert dist.dispatcher.connectors.channels == []
        dist.dispatcher.close()

    def test_build_with_channels(self, tmp_path):
        cfg = _config(tmp_path, channels={
            "discord": {"url": "https://discord.com/api/webhooks/x"},
            "mastodon": {"type": "mastodon", "instance_url": "https://m.test", "access_tokens": {"main": "t"}},
        })
        dist = build_distributor(cfg)
        assert dist.dispatcher.connectors.channels == ["discord", "mastodon"]
        assert dist.dispatcher.breakers.channels == ["discord", "mastodon"]
        assert dist.dispatcher.policy.max_attempts == cfg.max_attempts
        dist.dispatcher.close()

    def test_end_to_end_dry_run(self, tmp_path, clock):
        cfg = _config(tmp_path, channels={"discord": {"url": "https://discord.com/api/webhooks/x"}})
        dist = build_distributor(cfg, clock=clock)
        job_id = dist.schedule_distribution("essay-1", [Target("discord", "default")])
        dist.run_pending()
        dist.dispatcher.close()

        assert (tmp_path / "jobs.json").exists()
        reopened = build_distributor(cfg, clock=clock)
        status = reopened.get_status(job_id)
        assert status.state == JobState.COMPLETED
        assert status.results[0].external_id == "webhook-000001"
        reopened.dispatcher.close()

    def test_prebuilt_store(self, tmp_path):
        store = LocalJobStore()
        dist = build_distributor(_config(tmp_path), store=store)
        assert dist.store is store
        dist.dispatcher.close()

    def test_build_connectors_uses_live_mode(self):
        cfg = EngineConfig(live_mode=True, channels={"discord": {"url": "https://x.test"}})
        assert build_connectors(cfg).get("discord")._live is True


class TestBuildWorkerPool:
    def test_pool_settings(self, tmp_path):
        cfg = _config(tmp_path, workers=3, poll_interval=2.0, sweep_interval=30.0)
        dist = build_distributor(cfg)
        pool = build_worker_pool(cfg, dist)
        assert pool.workers == 3
        assert pool.poll_interval == 2.0
        assert pool.dispatcher is dist.dispatcher
        dist.dispatcher.close()
