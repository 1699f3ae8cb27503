from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DOCKER_DATA_DIR = Path("/var/lib/edge-usage")


def _in_container() -> bool:
    return Path("/.dockerenv").exists() or Path("/run/.containerenv").exists()


def _default_home_dir() -> Path:
    if _in_container():
        return DOCKER_DATA_DIR
    return Path.home() / ".edge-usage"


DEFAULT_HOME_DIR = _default_home_dir()
DEFAULT_DB_PATH = DEFAULT_HOME_DIR / "store.db"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EDGE_USAGE_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = f"sqlite+aiosqlite:///{DEFAULT_DB_PATH}"
    database_pool_size: int = Field(default=15, gt=0)
    database_max_overflow: int = Field(default=10, ge=0)
    database_pool_timeout_seconds: float = Field(default=30.0, gt=0)
    # Cache/config storage:
    # - "db": persists across restarts and is shared between workers.
    # - "memory": per-process, resets on restart. Useful for local runs and tests.
    kv_backend: Literal["db", "memory"] = "db"
    api_token: str | None = None
    analytics_base_url: str = "https://api.cloudflare.com/client/v4"
    analytics_timeout_seconds: float = Field(default=30.0, gt=0)
    zone_query_concurrency: int = Field(default=10, gt=0)
    account_fetch_concurrency: int = Field(default=5, gt=0)
    prewarm_enabled: bool = True
    prewarm_interval_seconds: int = Field(default=6 * 60 * 60, gt=0)
    threshold_check_enabled: bool = True
    dashboard_url: str | None = None
    webhook_timeout_seconds: float = Field(default=10.0, gt=0)
    config_user_id: str = "default"
    http_client_connector_limit: int = Field(default=100, gt=0)
    http_client_connector_limit_per_host: int = Field(default=50, gt=0)
    http_client_keepalive_timeout_seconds: float = Field(default=30.0, gt=0)
    http_client_dns_cache_ttl_seconds: int = Field(default=300, ge=0)
    access_log_enabled: bool = False
    debug_logging: bool = False

    @field_validator("database_url")
    @classmethod
    def _expand_database_url(cls, value: str) -> str:
        for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
            if value.startswith(prefix):
                path = value[len(prefix) :]
                if path.startswith("~"):
                    return f"{prefix}{Path(path).expanduser()}"
        return value

    @field_validator("api_token", "dashboard_url", mode="before")
    @classmethod
    def _blank_as_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("analytics_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
