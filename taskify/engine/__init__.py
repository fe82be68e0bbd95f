"""Taskify Engine — Errors, configuration, logging and identity context."""

from taskify.engine.config import TaskifyConfig, get_config, load_config  # noqa: F401
from taskify.engine.context import UserContext, get_user_context, set_user_context  # noqa: F401
from taskify.engine.errors import (  # noqa: F401
    ConfigError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
    RemoteRejectedError,
    RemoteUnavailableError,
    TaskifyError,
)

__all__ = [
    "TaskifyConfig",
    "get_config",
    "load_config",
    "UserContext",
    "get_user_context",
    "set_user_context",
    "TaskifyError",
    "RemoteUnavailableError",
    "RemoteRejectedError",
    "NotFoundError",
    "PreconditionFailedError",
    "InvalidTransitionError",
    "ConfigError",
]
