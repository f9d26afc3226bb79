"""TOML config loading and profiles."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

# Default config search path (project root or cwd)
_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent.parent / "config"
_CWD_CONFIG = Path.cwd() / "config"

_ENV_OVERRIDES = {
    "AUCTIONLIVE_SUPABASE_URL": ("supabase", "url"),
    "AUCTIONLIVE_SUPABASE_KEY": ("supabase", "anon_key"),
}


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Override values take precedence."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _find_config_dir(config_dir: Path | None = None) -> Path:
    if config_dir is not None:
        return config_dir
    if _CWD_CONFIG.exists():
        return _CWD_CONFIG
    return _CONFIG_DIR


def _apply_env(raw: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            raw = _deep_merge(raw, {section: {key: value}})
    return raw


def load_config(profile: str | None = None, config_dir: Path | None = None) -> dict[str, Any]:
    """Load merged config from default.toml, optional profile overlay and env overrides."""
    config_dir = _find_config_dir(config_dir)
    default_path = config_dir / "default.toml"
    base: dict[str, Any] = _load_toml(default_path) if default_path.exists() else {}
    if profile:
        profile_path = config_dir / f"{profile}.toml"
        if profile_path.exists():
            overlay = _load_toml(profile_path)
            base = _deep_merge(base, overlay)
    return _apply_env(base)


def get_settings(profile: str | None = None, config_dir: Path | None = None) -> Settings:
    """Return Settings instance from merged config."""
    raw = load_config(profile, config_dir)
    return Settings.from_dict(raw)


class Settings:
    """Application settings from TOML config."""

    def __init__(
        self,
        *,
        supabase: dict[str, Any] | None = None,
        subscription: dict[str, Any] | None = None,
        metrics: dict[str, Any] | None = None,
        storage: dict[str, Any] | None = None,
        logging: dict[str, Any] | None = None,
    ):
        self.supabase = supabase or {}
        self.subscription = subscription or {}
        self.metrics = metrics or {}
        self.storage = storage or {}
        self.logging = logging or {}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        return cls(
            supabase=raw.get("supabase"),
            subscription=raw.get("subscription"),
            metrics=raw.get("metrics"),
            storage=raw.get("storage"),
            logging=raw.get("logging"),
        )

    # Convenience accessors with defaults
    @property
    def supabase_url(self) -> str:
        return str(self.supabase.get("url", "")).rstrip("/")

    @property
    def supabase_key(self) -> str:
        return str(self.supabase.get("anon_key", ""))

    @property
    def supabase_schema(self) -> str:
        return str(self.supabase.get("schema", "public"))

    @property
    def realtime_url(self) -> str:
        """Realtime websocket endpoint; derived from the project URL when not set."""
        explicit = self.supabase.get("realtime_url")
        if explicit:
            return str(explicit)
        url = self.supabase_url
        if url.startswith("https://"):
            url = "wss://" + url[len("https://"):]
        elif url.startswith("http://"):
            url = "ws://" + url[len("http://"):]
        return f"{url}/realtime/v1/websocket" if url else ""

    @property
    def reconnect_base_delay_sec(self) -> float:
        return float(self.subscription.get("reconnect_base_delay_sec", 1.0))

    @property
    def reconnect_max_delay_sec(self) -> float:
        return float(self.subscription.get("reconnect_max_delay_sec", 30.0))

    @property
    def reconnect_max_retries(self) -> int:
        return int(self.subscription.get("reconnect_max_retries", 0))

    @property
    def request_timeout_sec(self) -> float:
        return float(self.subscription.get("request_timeout_sec", 10.0))

    @property
    def heartbeat_interval_sec(self) -> float:
        return float(self.subscription.get("heartbeat_interval_sec", 25.0))

    @property
    def activity_limit(self) -> int:
        return int(self.metrics.get("activity_limit", 50))

    @property
    def db_path(self) -> str:
        return self.storage.get("db_path", "data/auctionlive.duckdb")

    @property
    def event_batch_size(self) -> int:
        return int(self.storage.get("event_batch_size", 100))

    @property
    def logging_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    @property
    def logging_format(self) -> str:
        return self.logging.get("format", "console")

    @property
    def logging_level_num(self) -> int:
        return getattr(logging, self.logging_level, logging.INFO)


def configure_logging(settings: Settings) -> None:
    """Configure structlog with settings. Call once at application entry."""
    import structlog

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.logging_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.logging_level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
