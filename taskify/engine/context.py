"""
Taskify Identity Context — The authenticated user for the current task.

The identity collaborator (auth flows are out of scope) sets a UserContext
once a user signs in; the sync core only reads it. Every mutation that needs
``created_by`` resolves it from here.

Usage:
    from taskify.engine.context import (
        UserContext,
        set_user_context,
        get_user_context,
        require_user_context,
        clear_user_context,
    )
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Dict, Optional

from taskify.engine.errors import PreconditionFailedError

USER_ROLES = ("admin", "manager", "user")

current_user_context: ContextVar[Optional["UserContext"]] = ContextVar(
    "user_context", default=None
)


@dataclass(frozen=True)
class UserContext:
    """Read-only view of the signed-in user, supplied by the identity collaborator."""

    id: str
    email: str = ""
    name: str = "User"
    role: str = "user"  # "admin" | "manager" | "user"
    avatar: Optional[str] = None
    access_token: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("UserContext.id must not be empty")
        if self.role not in USER_ROLES:
            raise ValueError(f"role must be one of {USER_ROLES}, got '{self.role}'")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging. The access token is never included."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
        }


def set_user_context(ctx: UserContext) -> None:
    """Set the user context for the current task."""
    current_user_context.set(ctx)


def get_user_context() -> Optional[UserContext]:
    """Get the current user context. Returns None if nobody is signed in."""
    return current_user_context.get()


def require_user_context() -> UserContext:
    """Get the user context or raise if nobody is signed in."""
    ctx = get_user_context()
    if ctx is None:
        raise PreconditionFailedError(
            "No authenticated user",
            reason="missing_user_context",
        )
    return ctx


def clear_user_context() -> None:
    """Clear the user context (e.g. on logout)."""
    current_user_context.set(None)
