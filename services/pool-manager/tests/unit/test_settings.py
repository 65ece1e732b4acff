import json

from pydantic import ValidationError
import pytest

from pool_manager.config import PoolManagerSettings


def test_defaults():
    settings = PoolManagerSettings()

    assert settings.min_warm_workers <= settings.max_warm_workers
    assert settings.terminal_ttl_seconds == 3600
    assert settings.notify_timeout_seconds == 10.0


def test_pool_bounds_from_env(monkeypatch):
    monkeypatch.setenv("MIN_WARM_WORKERS", "1")
    monkeypatch.setenv("MAX_WARM_WORKERS", "6")

    settings = PoolManagerSettings()

    assert settings.min_warm_workers == 1
    assert settings.max_warm_workers == 6


def test_min_above_max_is_rejected():
    with pytest.raises(ValidationError, match="must not exceed"):
        PoolManagerSettings(min_warm_workers=5, max_warm_workers=2)


def test_docker_labels_parsed(monkeypatch):
    monkeypatch.setenv("WORKER_DOCKER_LABELS", json.dumps({"team": "media", "tier": 2}))

    assert PoolManagerSettings().docker_labels() == {"team": "media", "tier": "2"}


def test_subscriber_urls_from_env(monkeypatch):
    monkeypatch.setenv("SUBSCRIBER_URLS", '["https://a.example/hook", "https://b.example/hook"]')

    assert PoolManagerSettings().subscriber_urls == [
        "https://a.example/hook",
        "https://b.example/hook",
    ]


def test_invalid_log_level_rejected():
    with pytest.raises(ValidationError):
        PoolManagerSettings(log_level="LOUD")


def test_reap_grace_must_be_below_terminal_ttl():
    with pytest.raises(ValidationError, match="reap_grace_seconds"):
        PoolManagerSettings(reap_grace_seconds=3600, terminal_ttl_seconds=3600)
