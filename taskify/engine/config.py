"""
Taskify Configuration — Load and validate taskify.yaml at session start.

Usage:
    from taskify.engine.config import load_config, get_config, get_environment
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from taskify.engine.errors import ConfigError

CONFIG_FILENAME = "taskify.yaml"

ENV_REMOTE_URL = "TASKIFY_REMOTE_URL"
ENV_API_KEY = "TASKIFY_API_KEY"


# ---------------------------------------------------------------------------
# Pydantic models for taskify.yaml
# ---------------------------------------------------------------------------

class RemoteConfig(BaseModel):
    base_url: str = "http://localhost:54321/rest/v1"
    api_key: str = ""
    timeout: float = 15.0
    retry_count: int = Field(default=2, ge=0)
    retry_delay: float = Field(default=0.5, ge=0)
    backoff: str = "exponential"
    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout: float = 30.0

    @field_validator("backoff")
    @classmethod
    def validate_backoff(cls, v: str) -> str:
        if v not in ("exponential", "linear", "fixed"):
            raise ValueError(f"backoff must be exponential/linear/fixed, got '{v}'")
        return v


class RealtimeConfig(BaseModel):
    enabled: bool = True
    redis_url: str = "redis://localhost:6379/0"
    channel_prefix: str = "taskify:changes:"
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 30.0


class SyncConfig(BaseModel):
    due_soon_days: int = Field(default=3, ge=0)
    recent_limit: int = Field(default=5, ge=1)
    strict_status_transitions: bool = False
    task_order: str = "created_at.desc"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    directory: str = ".taskify/logs"
    structured: bool = True
    flush_interval_ms: int = 100
    flush_batch_size: int = 50
    max_queue_size: int = 10000

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level '{v}'")
        return v


class TaskifyConfig(BaseModel):
    """Root model for taskify.yaml."""
    environment: str = "dev"

    remote: RemoteConfig = RemoteConfig()
    realtime: RealtimeConfig = RealtimeConfig()
    sync: SyncConfig = SyncConfig()
    logging: LoggingConfig = LoggingConfig()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Config Loading Functions
# ---------------------------------------------------------------------------

_config: Optional[TaskifyConfig] = None


def _find_project_root() -> Path:
    """Find the project root by looking for taskify.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / CONFIG_FILENAME).exists():
            return parent
    return current


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_vars(data: Dict[str, Any]) -> Dict[str, Any]:
    remote = dict(data.get("remote") or {})
    if os.environ.get(ENV_REMOTE_URL):
        remote["base_url"] = os.environ[ENV_REMOTE_URL]
    if os.environ.get(ENV_API_KEY):
        remote["api_key"] = os.environ[ENV_API_KEY]
    if remote:
        data["remote"] = remote
    return data


def build_config(raw: Dict[str, Any]) -> TaskifyConfig:
    """
    Validate a raw config dict.

    The ``environments`` section holds per-environment overrides that are
    merged over the base values for the selected environment.
    """
    raw = dict(raw or {})
    overrides = raw.pop("environments", {}) or {}
    environment = raw.get("environment", "dev")
    if environment in overrides:
        raw = _deep_merge(raw, overrides[environment] or {})
    raw = _apply_env_vars(raw)
    try:
        return TaskifyConfig(**raw)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid configuration: {e.error_count()} error(s)",
            validation_errors=e.errors(),
        ) from e


def load_config(config_path: Optional[str] = None) -> TaskifyConfig:
    """
    Load and validate taskify.yaml.

    Args:
        config_path: Explicit path to taskify.yaml. If None, auto-discovers.

    Returns:
        Validated TaskifyConfig instance. Defaults when no file exists.
    """
    global _config

    if config_path is None:
        config_path = str(_find_project_root() / CONFIG_FILENAME)

    path = Path(config_path)
    if not path.exists():
        _config = build_config({})
        return _config

    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")

    _config = build_config(raw)
    return _config


def get_config() -> TaskifyConfig:
    """Get the currently loaded config, loading if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_environment() -> str:
    """Get the current environment."""
    return get_config().environment
