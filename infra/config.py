"""Centralized application configuration with schema validation.

This module is intentionally compatibility-first:
- Supports flat environment names (for example ``TARGET_TABLE``).
- Supports nested names (for example ``WRITER__TARGET_TABLE``).
- Optionally reads a local ``.env`` file before process env values.

Writer options also accept the camelCase keys used in pipeline definitions
(``targetTable``, ``upsertMode``, ``primaryKeys`` ...).
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from threading import Lock
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from contracts.errors import ConfigError
from contracts.records import UpsertMode, UpsertPolicy

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _split_names(value: object, *, field_name: str) -> list[str]:
    """Accept list or comma-separated string and normalize to unique ordered list."""
    if value is None:
        return []

    items: list[str]
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple)):
        items = [str(part).strip() for part in value if str(part).strip()]
    else:
        raise TypeError(f"{field_name} must be a list[str] or comma-separated string")

    seen: set[str] = set()
    ordered: list[str] = []
    for name in items:
        if name not in seen:
            seen.add(name)
            ordered.append(name)
    return ordered


class StoreSettings(BaseModel):
    """Target store connection settings."""

    model_config = ConfigDict(frozen=True)

    backend: Literal["sqlite", "duckdb", "postgres"] = Field(default="sqlite")
    url: str = Field(default=":memory:", description="SQLite/DuckDB path or Postgres DSN")
    pool_maxconn: int = Field(default=10, ge=1, le=100)
    connect_timeout: int = Field(default=5, ge=1, le=60)

    @field_validator("backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value: object) -> str:
        text = str(value or "").strip().lower()
        if text in {"postgresql", "pg"}:
            return "postgres"
        return text or "sqlite"


class WriterSettings(BaseModel):
    """Options recognized by the SQL writer stage."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    target_table: str = Field(default="")
    upsert_mode: UpsertMode = Field(default=UpsertMode.INSERT_ONLY)
    primary_keys: list[str] = Field(default_factory=list)
    preserved_fields: list[str] = Field(default_factory=list)
    concurrency_level: int = Field(default=1, ge=1)
    batch_size: int = Field(default=100, ge=0)

    @field_validator("target_table", mode="before")
    @classmethod
    def _normalize_table(cls, value: object) -> str:
        return str(value or "").strip()

    @field_validator("upsert_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: object) -> object:
        if isinstance(value, str):
            text = value.strip().lower().replace("_", "-")
            return text or UpsertMode.INSERT_ONLY.value
        return value

    @field_validator("primary_keys", "preserved_fields", mode="before")
    @classmethod
    def _normalize_names(cls, value: object, info: ValidationInfo) -> list[str]:
        return _split_names(value, field_name=str(info.field_name))

    def policy(self) -> UpsertPolicy:
        """Build the upsert policy, raising ConfigError when inconsistent."""
        if self.preserved_fields and not self.primary_keys:
            raise ConfigError("primaryKeys required if preservedFields specified")
        return UpsertPolicy(
            mode=self.upsert_mode,
            primary_keys=tuple(self.primary_keys),
            preserved_fields=tuple(self.preserved_fields),
        )


class LoggingSettings(BaseModel):
    """Repository-wide logging settings."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    override_root_handlers: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        text = str(value or "").strip().upper()
        if text in _LOG_LEVELS:
            return text
        return "INFO"


class DbMetricsConfig(BaseModel):
    """Statement instrumentation settings."""

    model_config = ConfigDict(frozen=True)

    metrics_enabled: bool = Field(default=True)
    slow_query_threshold_ms: float = Field(default=1000.0, ge=0.0)

    @field_validator("metrics_enabled", mode="before")
    @classmethod
    def _normalize_metrics_enabled(cls, value: object) -> bool:
        if value is None:
            return True
        text = str(value).strip().lower()
        if text in {"0", "false", "no", "off"}:
            return False
        return True

    @field_validator("slow_query_threshold_ms", mode="before")
    @classmethod
    def _normalize_threshold_ms(cls, value: object) -> float:
        if value is None:
            return 1000.0
        text = str(value).strip()
        if text == "":
            return 1000.0
        try:
            parsed = float(text)
        except (TypeError, ValueError):
            return 1000.0
        return max(0.0, parsed)


class Settings(BaseModel):
    """Top-level settings model."""

    model_config = ConfigDict(frozen=True)

    store: StoreSettings = Field(default_factory=StoreSettings)
    writer: WriterSettings = Field(default_factory=WriterSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    db_metrics: DbMetricsConfig = Field(default_factory=DbMetricsConfig)

    @classmethod
    def from_env(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        env_file: str = ".env",
    ) -> Settings:
        """Build settings from `.env` then environment variables."""
        runtime_env = os.environ if env is None else env
        merged_env = _merge_env(_load_dotenv(Path(env_file)), runtime_env)
        payload = _build_payload(merged_env)
        return cls.model_validate(payload)


def _db_metrics_from_env(*, env: Mapping[str, str] | None = None, env_file: str = ".env") -> DbMetricsConfig:
    """Build only the instrumentation settings from `.env` then environment.

    A malformed writer or store variable fails ``get_settings`` only.
    """
    runtime_env = os.environ if env is None else env
    merged_env = _merge_env(_load_dotenv(Path(env_file)), runtime_env)
    return DbMetricsConfig.model_validate(_build_payload(merged_env)["db_metrics"])


def _load_dotenv(path: Path) -> dict[str, str]:
    """Parse a minimal `.env` file format."""
    if not path.exists() or not path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        key_clean = key.strip()
        value = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key_clean:
            values[key_clean] = value
    return values


def _merge_env(dotenv_values: Mapping[str, str], runtime_env: Mapping[str, str]) -> dict[str, str]:
    """Return env map where process env overrides `.env` values."""
    merged = {str(k): str(v) for k, v in dotenv_values.items()}
    for key, value in runtime_env.items():
        merged[str(key)] = str(value)
    return merged


def _first_non_empty(env: Mapping[str, str], *keys: str) -> str | None:
    """Return the first non-empty value for the provided keys."""
    for key in keys:
        value = str(env.get(key, "")).strip()
        if value:
            return value
    return None


def _build_payload(env: Mapping[str, str]) -> dict[str, object]:
    """Build nested settings payload from env values."""
    store = {
        "backend": _first_non_empty(env, "STORE__BACKEND", "STORE_BACKEND"),
        "url": _first_non_empty(env, "STORE__URL", "STORE_URL", "DB_URL"),
        "pool_maxconn": _first_non_empty(env, "STORE__POOL_MAXCONN", "DB_POOL_MAXCONN"),
        "connect_timeout": _first_non_empty(env, "STORE__CONNECT_TIMEOUT", "DB_CONNECT_TIMEOUT"),
    }
    writer = {
        "target_table": _first_non_empty(env, "WRITER__TARGET_TABLE", "TARGET_TABLE"),
        "upsert_mode": _first_non_empty(env, "WRITER__UPSERT_MODE", "UPSERT_MODE"),
        "primary_keys": _first_non_empty(env, "WRITER__PRIMARY_KEYS", "PRIMARY_KEYS"),
        "preserved_fields": _first_non_empty(env, "WRITER__PRESERVED_FIELDS", "PRESERVED_FIELDS"),
        "concurrency_level": _first_non_empty(env, "WRITER__CONCURRENCY_LEVEL", "CONCURRENCY_LEVEL"),
        "batch_size": _first_non_empty(env, "WRITER__BATCH_SIZE", "BATCH_SIZE"),
    }
    logging_settings = {
        "level": _first_non_empty(env, "LOGGING__LEVEL", "UPSERTPIPE_LOG_LEVEL"),
        "json_logs": _first_non_empty(env, "LOGGING__JSON_LOGS", "UPSERTPIPE_LOG_JSON"),
        "override_root_handlers": _first_non_empty(
            env, "LOGGING__OVERRIDE_ROOT_HANDLERS", "UPSERTPIPE_LOG_OVERRIDE"
        ),
    }
    db_metrics = {
        "metrics_enabled": _first_non_empty(env, "DB_METRICS__ENABLED", "DB_QUERY_METRICS_ENABLED"),
        "slow_query_threshold_ms": _first_non_empty(
            env, "DB_METRICS__SLOW_QUERY_THRESHOLD_MS", "DB_SLOW_QUERY_THRESHOLD_MS"
        ),
    }
    return {
        "store": {k: v for k, v in store.items() if v is not None},
        "writer": {k: v for k, v in writer.items() if v is not None},
        "logging": {k: v for k, v in logging_settings.items() if v is not None},
        "db_metrics": {k: v for k, v in db_metrics.items() if v is not None},
    }


_SETTINGS_LOCK = Lock()
_SETTINGS_CACHE: Settings | None = None
_DB_METRICS_CACHE: DbMetricsConfig | None = None


def get_settings(*, reload: bool = False) -> Settings:
    """Return cached settings, optionally forcing reload from env."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        if reload or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings.from_env()
        return _SETTINGS_CACHE


def get_db_metrics_config(*, reload: bool = False) -> DbMetricsConfig:
    """Return cached instrumentation settings, read independently of ``Settings``."""
    global _DB_METRICS_CACHE
    with _SETTINGS_LOCK:
        if reload or _DB_METRICS_CACHE is None:
            _DB_METRICS_CACHE = _db_metrics_from_env()
        return _DB_METRICS_CACHE


def clear_settings_cache() -> None:
    """Clear in-process settings caches."""
    global _SETTINGS_CACHE, _DB_METRICS_CACHE
    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None
        _DB_METRICS_CACHE = None


__all__ = [
    "DbMetricsConfig",
    "LoggingSettings",
    "Settings",
    "StoreSettings",
    "WriterSettings",
    "get_db_metrics_config",
    "get_settings",
    "clear_settings_cache",
    "ValidationError",
]
