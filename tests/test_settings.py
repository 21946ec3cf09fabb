"""
Tests for environment-driven configuration.
"""
import pytest

from config.settings import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "PORT",
        "CACHE_TTL_SECONDS",
        "MAX_CACHE_ENTRIES",
        "MAX_CACHE_BODY_BYTES",
        "UPSTREAM_FORWARD_ALL_HEADERS",
        "UPSTREAM_KEEP_ALIVE",
        "CACHE_MISS_SINGLEFLIGHT",
        "ACCESS_LOG_SAMPLE_RATE",
        "API_BASE_URL",
        "COALESCE_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.port == 3000
    assert settings.cache_ttl_seconds == 600
    assert settings.max_cache_entries == 1000
    assert settings.max_cache_body_bytes == 1024 * 1024
    assert settings.upstream_forward_all_headers is False
    assert settings.upstream_keep_alive is False
    assert settings.cache_miss_singleflight is False
    assert settings.access_log_sample_rate == 1.0
    assert settings.media_path_prefix == "/t/p/"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("CACHE_TTL_SECONDS", "30")
    monkeypatch.setenv("CACHE_MISS_SINGLEFLIGHT", "true")
    monkeypatch.setenv("UPSTREAM_FORWARD_ALL_HEADERS", "true")
    monkeypatch.setenv("API_BASE_URL", "https://api.other.test")

    settings = Settings(_env_file=None)

    assert settings.port == 8080
    assert settings.cache_ttl_seconds == 30
    assert settings.cache_miss_singleflight is True
    assert settings.upstream_forward_all_headers is True
    assert settings.api_base_url == "https://api.other.test"


@pytest.mark.parametrize("raw", ["0", "-5", "abc", ""])
def test_invalid_numbers_fall_back_to_defaults(monkeypatch, raw):
    monkeypatch.setenv("MAX_CACHE_ENTRIES", raw)
    monkeypatch.setenv("COALESCE_TIMEOUT_SECONDS", raw)
    settings = Settings(_env_file=None)
    assert settings.max_cache_entries == 1000
    assert settings.coalesce_timeout_seconds == 30.0


@pytest.mark.parametrize("raw,expected", [("true", True), ("TRUE", True), ("maybe", False), ("1", False), ("", False)])
def test_unrecognised_flags_are_off(monkeypatch, raw, expected):
    monkeypatch.setenv("CACHE_MISS_SINGLEFLIGHT", raw)
    monkeypatch.setenv("UPSTREAM_KEEP_ALIVE", raw)
    settings = Settings(_env_file=None)
    assert settings.cache_miss_singleflight is expected
    assert settings.upstream_keep_alive is expected


@pytest.mark.parametrize("raw,expected", [("0.25", 0.25), ("5", 1.0), ("-1", 0.0), ("often", 1.0)])
def test_sample_rate_is_clamped(monkeypatch, raw, expected):
    monkeypatch.setenv("ACCESS_LOG_SAMPLE_RATE", raw)
    assert Settings(_env_file=None).access_log_sample_rate == expected
