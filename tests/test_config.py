import pytest

from flowsync.config import ExecutionMode, Settings, get_settings, reset_settings_cache
from flowsync.service.runtime import Runtime, _mask_url_password


@pytest.mark.parametrize("raw,expected", [("queue", ExecutionMode.QUEUE), (" MAIN ", ExecutionMode.MAIN)])
def test_mode_is_read_from_env(monkeypatch, raw, expected):
    monkeypatch.setenv("MODE", raw)
    assert Settings.from_env().mode == expected


def test_unknown_mode_is_rejected(monkeypatch):
    monkeypatch.setenv("MODE", "cluster")
    with pytest.raises(ValueError):
        Settings.from_env()


def test_cors_origins_are_split(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,,")
    assert Settings.from_env().cors_allow_origins == ["https://a.example", "https://b.example"]


def test_settings_are_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("PREDICTION_EVENTS_CHANNEL", "events:test")
    reset_settings_cache()
    assert get_settings().prediction_events_channel == "events:test"


def test_queue_mode_without_redis_falls_back_in_test_mode(monkeypatch):
    monkeypatch.setenv("MODE", "queue")
    monkeypatch.setenv("REDIS_URL", "")
    reset_settings_cache()

    runtime = Runtime()

    assert runtime.settings.mode == ExecutionMode.QUEUE
    assert runtime.mode == ExecutionMode.MAIN
    assert runtime.abort_coordinator.mode == ExecutionMode.MAIN
    assert runtime.abort_consumer is None


def test_queue_mode_without_redis_fails_outside_test_mode(monkeypatch):
    monkeypatch.setenv("MODE", "queue")
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    reset_settings_cache()

    with pytest.raises(RuntimeError):
        Runtime()


def test_mask_url_password():
    assert _mask_url_password("redis://:secret@localhost:6379/0") == "redis://:***@localhost:6379/0"
    assert _mask_url_password("redis://localhost:6379") == "redis://localhost:6379"
