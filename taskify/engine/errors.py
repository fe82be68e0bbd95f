"""
Taskify Error Hierarchy — Structured exceptions for the sync core.

Every error is serializable so it can be written to the structured log and
surfaced to the presentation layer inside a MutationResult.

Hierarchy:
    TaskifyError
    ├── RemoteUnavailableError   — Remote store unreachable (network, 5xx, circuit open)
    ├── RemoteRejectedError      — Remote store refused the request (validation, auth, conflict)
    ├── NotFoundError            — Mutation target absent from the local store
    ├── PreconditionFailedError  — Missing required context (e.g. no authenticated user)
    │   └── InvalidTransitionError — Status change refused by the strict transition policy
    └── ConfigError              — Invalid taskify.yaml
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class TaskifyError(Exception):
    """
    Base error for all Taskify sync failures.
    All context is kept as a dict so it serializes straight to JSON.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.error_type: str = self.__class__.__name__
        self.entity: Optional[str] = context.get("entity")
        self.operation: Optional[str] = context.get("operation")
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        """True when retrying the same call later may succeed."""
        return False

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "entity": self.entity,
            "operation": self.operation,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("entity", "operation")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.entity:
            parts.append(f"entity={self.entity}")
        if self.operation:
            parts.append(f"operation={self.operation}")
        return " | ".join(parts)


class RemoteUnavailableError(TaskifyError):
    """
    Remote collaborator could not be reached or answered with a server-side
    failure. Local optimistic state stays in place pending a retry.
    """

    def __init__(self, message: str, **context: Any):
        self.status_code: Optional[int] = context.get("status_code")
        self.table: Optional[str] = context.get("table")
        super().__init__(message, **context)

    @property
    def is_transient(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["status_code"] = self.status_code
        d["table"] = self.table
        return d


class RemoteRejectedError(TaskifyError):
    """
    Remote collaborator refused the request (validation, authorization,
    uniqueness conflict) or returned a row that cannot be translated.
    Local optimistic state is rolled back by resynchronization.
    """

    def __init__(self, message: str, **context: Any):
        self.status_code: Optional[int] = context.get("status_code")
        self.code: Optional[str] = context.get("code")
        self.details: Optional[Any] = context.get("details")
        self.table: Optional[str] = context.get("table")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["status_code"] = self.status_code
        d["code"] = self.code
        d["details"] = self.details
        d["table"] = self.table
        return d


class NotFoundError(TaskifyError):
    """Mutation target is not present in the local store. No remote call is made."""

    def __init__(self, message: str, **context: Any):
        self.entity_id: Optional[str] = context.get("entity_id")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["entity_id"] = self.entity_id
        return d


class PreconditionFailedError(TaskifyError):
    """Mutation attempted without required context. The operation is a local no-op."""
    pass


class InvalidTransitionError(PreconditionFailedError):
    """Status change outside the workflow, refused under the strict policy."""

    def __init__(self, message: str, **context: Any):
        self.from_status: Optional[str] = context.get("from_status")
        self.to_status: Optional[str] = context.get("to_status")
        super().__init__(message, **context)


class ConfigError(TaskifyError):
    """Configuration error — invalid taskify.yaml."""
    pass
