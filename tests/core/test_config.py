from __future__ import annotations

import pytest

from progression.core.config import AppEnv, Settings, load_settings

# ---- valid values ----


def test_load_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "APP_ENV",
        "LOG_LEVEL",
        "LOG_JSON",
        "RANKING_CACHE_TTL",
        "RANKING_DEFAULT_LIMIT",
        "DATABASE_URL",
        "REDIS_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.app_env == "dev"
    assert settings.log_level == "info"
    assert settings.log_json is False
    assert settings.ranking_cache_ttl == 60
    assert settings.ranking_default_limit == 50
    assert settings.database_url is None
    assert settings.redis_url is None


def test_load_settings_normalizes_case_and_whitespace(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("APP_ENV", "  PROD ")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("LOG_JSON", "TRUE")
    settings = load_settings()
    assert settings.app_env == "prod"
    assert settings.log_level == "debug"
    assert settings.log_json is True


def test_load_settings_reads_ranking_knobs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RANKING_CACHE_TTL", "0")
    monkeypatch.setenv("RANKING_DEFAULT_LIMIT", "10")
    settings = load_settings()
    assert settings.ranking_cache_ttl == 0
    assert settings.ranking_default_limit == 10


def test_blank_database_url_means_in_memory(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "   ")
    assert load_settings().database_url is None


# ---- invalid values ----


def test_load_settings_rejects_invalid_app_env(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("APP_ENV", "staging")
    with pytest.raises(ValueError, match="APP_ENV must be dev|test|prod"):
        load_settings()


def test_load_settings_rejects_invalid_log_level(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("LOG_LEVEL", "verbose")
    with pytest.raises(ValueError, match="LOG_LEVEL must be"):
        load_settings()


def test_load_settings_rejects_invalid_log_json(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("LOG_JSON", "yes please")
    with pytest.raises(ValueError, match="LOG_JSON must be true|false"):
        load_settings()


def test_load_settings_rejects_non_integer_port(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PORT", "eighty")
    with pytest.raises(ValueError, match="PORT must be an integer"):
        load_settings()


def test_load_settings_rejects_negative_cache_ttl(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RANKING_CACHE_TTL", "-1")
    with pytest.raises(ValueError, match="RANKING_CACHE_TTL must be >= 0"):
        load_settings()


@pytest.mark.parametrize("limit", ["0", "501"])
def test_load_settings_rejects_out_of_range_limit(
    monkeypatch: pytest.MonkeyPatch, limit: str
) -> None:
    monkeypatch.setenv("RANKING_DEFAULT_LIMIT", limit)
    with pytest.raises(ValueError, match="RANKING_DEFAULT_LIMIT must be between"):
        load_settings()


# ---- Settings properties ----


def _make_settings(app_env: AppEnv = "dev") -> Settings:
    return Settings(  # type: ignore[arg-type]
        app_env=app_env,
        log_level="info",
        log_json=False,
        port=8000,
        database_url=None,
        redis_url=None,
        jwt_public_key=None,
        ranking_cache_ttl=60,
        ranking_default_limit=50,
    )


def test_settings_env_flags() -> None:
    assert _make_settings("dev").is_dev is True
    assert _make_settings("test").is_test is True
    prod = _make_settings("prod")
    assert (prod.is_dev, prod.is_test, prod.is_prod) == (False, False, True)


def test_settings_is_frozen() -> None:
    s = _make_settings()
    with pytest.raises(AttributeError):
        s.app_env = "prod"  # type: ignore[misc]
