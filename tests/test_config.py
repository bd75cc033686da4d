"""Tests for environment-driven settings."""

import pytest

from shelfsync.config import ShelfSyncSettings, get_settings


@pytest.fixture(autouse=True)
def clean_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults(monkeypatch):
    for name in ("QDRANT_URL", "VECTOR_SIZE", "DEFAULT_MARKUP", "ENABLE_DAN"):
        monkeypatch.delenv(name, raising=False)

    settings = ShelfSyncSettings(_env_file=None)

    assert settings.qdrant_url == ""
    assert settings.vector_size == 768
    assert settings.vector_distance == "Cosine"
    assert settings.scroll_retries == 3
    assert settings.default_markup == 1.4
    assert settings.enable_dan is False
    assert settings.proxy_timeout_seconds == 30.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("QDRANT_URL", "http://localhost:6333")
    monkeypatch.setenv("VECTOR_SIZE", "384")
    monkeypatch.setenv("ENABLE_DAN", "true")
    monkeypatch.setenv("SCROLL_BACKOFF_SECONDS", "0.25")

    settings = get_settings()

    assert settings.qdrant_url == "http://localhost:6333"
    assert settings.vector_size == 384
    assert settings.enable_dan is True
    assert settings.scroll_backoff_seconds == 0.25


def test_settings_are_cached(monkeypatch):
    first = get_settings()
    monkeypatch.setenv("VECTOR_SIZE", "1024")
    assert get_settings() is first


def test_env_file_is_read(tmp_path, monkeypatch):
    monkeypatch.delenv("DAN_KEY_SALT", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("DAN_KEY_SALT=from-file\nUNRELATED_KEY=ignored\n")

    settings = ShelfSyncSettings(_env_file=env_file)

    assert settings.dan_key_salt == "from-file"


@pytest.mark.parametrize(
    "url, key, expected",
    [
        ("", "", False),
        ("https://q.test", "", False),
        ("", "secret", False),
        ("https://q.test", "secret", True),
    ],
)
def test_proxy_configured(url, key, expected):
    settings = ShelfSyncSettings(
        _env_file=None, qdrant_upstream_url=url, qdrant_upstream_api_key=key
    )
    assert settings.proxy_configured is expected
