"""Pipeline configuration: YAML file with ${ENV_VAR} interpolation and env overrides."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from daydash.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")

# Environment variables that override file values
ENV_OVERRIDES = {
    "TWITTER_V2_BEARER_TOKEN": "bearer_token",
    "DAYDASH_DB_PATH": "db_path",
    "DAYDASH_POLL_INTERVAL": "poll_interval",
    "DAYDASH_LOG_LEVEL": "log_level",
}


@dataclass
class PipelineConfig:
    db_path: str = "data/daydash.db"
    bearer_token: str = ""
    user_id: str = "428333"
    api_base_url: str = "https://api.twitter.com/2"
    poll_interval: float = 300.0
    workers: int = 4
    queue_size: int = 100
    image_width: int = 600
    image_height: int = 300
    image_max_bytes: int = 10 * 1024 * 1024
    request_timeout: float = 30.0
    feed_retry_attempts: int = 1
    fetch_retry_attempts: int = 2
    story_limit: int = 20
    log_level: str = "INFO"

    def validate(self) -> PipelineConfig:
        """Raise ConfigurationError for settings the pipeline cannot start without."""
        if not self.bearer_token.strip():
            raise ConfigurationError(
                "TWITTER_V2_BEARER_TOKEN is blank but shouldn't be", step="config"
            )
        if not self.db_path.strip():
            raise ConfigurationError("news db_path is blank", step="config")
        for name in (
            "poll_interval", "workers", "queue_size", "image_width", "image_height", "image_max_bytes"
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive", step="config")
        return self

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> PipelineConfig:
        """Build from the ``news`` section of the config file."""
        news = dict(raw.get("news") or {})
        twitter = news.pop("twitter", None) or {}
        image = news.pop("image", None) or {}

        values: Dict[str, Any] = {
            "db_path": news.get("db_path"),
            "bearer_token": twitter.get("bearer_token"),
            "user_id": twitter.get("user_id"),
            "api_base_url": twitter.get("base_url"),
            "poll_interval": news.get("poll_interval_seconds"),
            "workers": news.get("workers"),
            "queue_size": news.get("queue_size"),
            "image_width": image.get("width"),
            "image_height": image.get("height"),
            "image_max_bytes": image.get("max_bytes"),
            "request_timeout": news.get("request_timeout_seconds"),
            "feed_retry_attempts": news.get("feed_retry_attempts"),
            "fetch_retry_attempts": news.get("fetch_retry_attempts"),
            "story_limit": news.get("story_limit"),
            "log_level": raw.get("log_level"),
        }
        return cls(**_coerce({k: v for k, v in values.items() if v is not None}))


def _resolve_env(value: Any, env: Mapping[str, str]) -> Any:
    """Replace ${VAR} references in strings (recursively through lists/dicts)."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: env.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _resolve_env(v, env) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env(v, env) for v in value]
    return value


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """Convert raw values to the dataclass field types."""
    types = {f.name: f.type for f in fields(PipelineConfig)}
    out: Dict[str, Any] = {}
    for name, value in values.items():
        kind = types[name]
        try:
            if kind == "int":
                out[name] = int(value)
            elif kind == "float":
                out[name] = float(value)
            else:
                out[name] = str(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid value for {name}: {value!r}", step="config") from e
    return out


def load_config(
    path: Optional[str] = None, env: Optional[Mapping[str, str]] = None
) -> PipelineConfig:
    """Load config from YAML (if present) and apply environment overrides.

    An explicitly given path must exist; the default path is optional.
    """
    env = os.environ if env is None else env
    config_path = Path(path or DEFAULT_CONFIG_PATH)

    raw: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"cannot parse {config_path}: {e}", step="config") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping", step="config")
        logger.debug("Loaded config from %s", config_path)
    elif path:
        raise ConfigurationError(f"config file not found: {config_path}", step="config")

    config = PipelineConfig.from_dict(_resolve_env(raw, env))

    overrides = {attr: env[var] for var, attr in ENV_OVERRIDES.items() if env.get(var)}
    for name, value in _coerce(overrides).items():
        setattr(config, name, value)
    return config
