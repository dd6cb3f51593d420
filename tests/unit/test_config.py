import pytest

from src.shared.config import Settings, get_settings, load_settings


def test_defaults_under_test_environment():
    settings = get_settings()
    assert settings.environment == "test"
    assert settings.is_local and settings.is_sqlite
    assert settings.queue_max_attempts == 3
    assert settings.wa_api_base_url == "https://graph.facebook.com/v21.0"
    assert settings.stale_resolved_hours == 24
    assert settings.stale_inactive_days == 7


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    settings = load_settings()
    assert settings.queue_max_attempts == 5
    assert settings.safe_dict()["redis_url"] == "<masked>"


def test_rejects_unsupported_database_url():
    with pytest.raises(ValueError):
        Settings(database_url="mysql://localhost/db")


def test_rejects_bad_integer(monkeypatch):
    monkeypatch.setenv("QUEUE_BATCH_SIZE", "many")
    with pytest.raises(ValueError):
        load_settings()
