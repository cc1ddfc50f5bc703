from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getint(name: str, default: str) -> int:
    raw = _getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    jwt_public_key: str | None
    ranking_cache_ttl: int
    ranking_default_limit: int

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "false").lower()

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if log_json_raw not in ("true", "false", "1", "0"):
        raise ValueError(f"LOG_JSON must be true|false (got {log_json_raw!r})")

    port = _getint("PORT", "8000")

    # Seconds a computed leaderboard may be served from cache.  0 disables it.
    ranking_cache_ttl = _getint("RANKING_CACHE_TTL", "60")
    if ranking_cache_ttl < 0:
        raise ValueError(
            f"RANKING_CACHE_TTL must be >= 0 (got {ranking_cache_ttl})"
        )

    ranking_default_limit = _getint("RANKING_DEFAULT_LIMIT", "50")
    if not 1 <= ranking_default_limit <= 500:
        raise ValueError(
            f"RANKING_DEFAULT_LIMIT must be between 1 and 500 (got {ranking_default_limit})"
        )

    database_url = _getenv("DATABASE_URL", "") or None
    redis_url = _getenv("REDIS_URL", "") or None
    # PEM of the identity provider's ES256 signing key.  Unset: ephemeral dev key.
    jwt_public_key = _getenv("JWT_PUBLIC_KEY", "") or None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("true", "1"),
        port=port,
        database_url=database_url,
        redis_url=redis_url,
        jwt_public_key=jwt_public_key,
        ranking_cache_ttl=ranking_cache_ttl,
        ranking_default_limit=ranking_default_limit,
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
