"""
Taskify domain records — Task, Team, TeamMember and their partial updates.

Records are frozen pydantic models: the store only ever holds immutable
snapshots, and every mutation produces a new instance via ``model_copy``.

Partial updates (``TaskPatch`` and friends) carry explicit presence: a field
passed as ``None`` means "clear it", a field not passed at all means "leave it
alone". Presence is read from ``model_fields_set``.

Input length limits live on the drafts and patches only. Records read back
from the remote are not held to them, since other clients may write longer
values.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


TITLE_MAX_LENGTH = 200
TEAM_NAME_MAX_LENGTH = 120


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Naive timestamps from the wire are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    COMPLETED = "completed"


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class TeamRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)

    @field_validator("*", mode="after")
    @classmethod
    def _aware_timestamps(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return ensure_aware(v)
        return v


class Task(_Record):
    """A unit of work, optionally assigned to a user and scoped to a team."""

    id: str = Field(min_length=1)
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.TODO
    due_date: datetime
    created_at: datetime
    updated_at: datetime
    created_by: str = Field(min_length=1)
    assigned_to: Optional[str] = None
    team_id: Optional[str] = None

    @model_validator(mode="after")
    def _updated_not_before_created(self) -> "Task":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED


class Team(_Record):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    created_at: datetime
    created_by: str = Field(min_length=1)
    join_code: str = Field(min_length=1)
    avatar: Optional[str] = None


class MemberProfile(_Record):
    """Display fields of a member, projected from the profiles table."""

    name: str = "Unknown User"
    email: str = ""
    avatar: Optional[str] = None


class TeamMember(_Record):
    """Membership of one user in one team; (team_id, user_id) is unique."""

    id: str = Field(min_length=1)
    team_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    role: TeamRole = TeamRole.MEMBER
    joined_at: datetime
    user: Optional[MemberProfile] = None


# ---------------------------------------------------------------------------
# Creation payloads
# ---------------------------------------------------------------------------

class TaskDraft(BaseModel):
    """
    Fields a caller supplies to create a task. ``id``, timestamps and
    ``created_by`` are never accepted here.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str = Field(max_length=TITLE_MAX_LENGTH)
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.TODO
    due_date: datetime
    assigned_to: Optional[str] = None
    team_id: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _title_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title is required")
        return v

    @field_validator("due_date")
    @classmethod
    def _aware_due_date(cls, v: datetime) -> datetime:
        return ensure_aware(v)


class TeamDraft(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(max_length=TEAM_NAME_MAX_LENGTH)
    description: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name_required(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("Team name is required")
        return v


# ---------------------------------------------------------------------------
# Partial updates with explicit presence
# ---------------------------------------------------------------------------

class Patch(BaseModel):
    """Base for partial updates."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Fields that may be changed but never cleared.
    non_nullable: ClassVar[FrozenSet[str]] = frozenset()

    @model_validator(mode="after")
    def _no_clearing_required_fields(self) -> "Patch":
        for name in self.model_fields_set & self.non_nullable:
            if getattr(self, name) is None:
                raise ValueError(f"'{name}' cannot be cleared")
        return self

    @field_validator("*", mode="after")
    @classmethod
    def _aware_timestamps(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return ensure_aware(v)
        return v

    def changes(self) -> Dict[str, Any]:
        """Only the fields the caller supplied, including explicit clears."""
        return {name: getattr(self, name) for name in self.model_fields_set}

    def cleared(self) -> FrozenSet[str]:
        """Fields explicitly set to None."""
        return frozenset(n for n in self.model_fields_set if getattr(self, n) is None)

    def is_empty(self) -> bool:
        return not self.model_fields_set


class TaskPatch(Patch):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset(
        {"title", "description", "priority", "status", "due_date"}
    )

    title: Optional[str] = Field(default=None, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    team_id: Optional[str] = None


class TeamPatch(Patch):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"name"})

    name: Optional[str] = Field(default=None, max_length=TEAM_NAME_MAX_LENGTH)
    description: Optional[str] = None
    avatar: Optional[str] = None


class TeamMemberPatch(Patch):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"role"})

    role: Optional[TeamRole] = None
