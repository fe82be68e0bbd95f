"""
Translation boundary between remote rows and Taskify records.

One explicit mapping pair per record type. Every ``*_from_row`` function
validates and defaults each field so nothing past this module ever sees the
remote schema; a row that cannot be interpreted raises RemoteRejectedError.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from taskify.engine.errors import RemoteRejectedError
from taskify.sync.models import (
    MemberProfile,
    Task,
    TaskPriority,
    TaskStatus,
    Team,
    TeamMember,
    TeamRole,
    ensure_aware,
)

logger = logging.getLogger("taskify.sync.translate")

# Record field -> wire column
TASK_FIELDS: Dict[str, str] = {
    "id": "id",
    "title": "title",
    "description": "description",
    "priority": "priority",
    "status": "status",
    "due_date": "due_date",
    "created_at": "created_at",
    "updated_at": "updated_at",
    "created_by": "created_by",
    "assigned_to": "assigned_to",
    "team_id": "team_id",
}

TEAM_FIELDS: Dict[str, str] = {
    "id": "id",
    "name": "name",
    "description": "description",
    "created_at": "created_at",
    "created_by": "created_by",
    "join_code": "join_code",
    "avatar": "avatar",
}

MEMBER_FIELDS: Dict[str, str] = {
    "id": "id",
    "team_id": "team_id",
    "user_id": "user_id",
    "role": "role",
    "joined_at": "joined_at",
}

# Older rows and other clients spell statuses differently.
_STATUS_ALIASES = {
    "in_progress": TaskStatus.IN_PROGRESS,
    "inprogress": TaskStatus.IN_PROGRESS,
    "in_review": TaskStatus.REVIEW,
    "done": TaskStatus.COMPLETED,
    "complete": TaskStatus.COMPLETED,
}


def _reject(table: str, message: str, row: Mapping[str, Any], **context: Any) -> RemoteRejectedError:
    return RemoteRejectedError(
        f"Malformed {table} row: {message}",
        table=table,
        operation="translate",
        record_id=row.get("id"),
        **context,
    )


def _text(row: Mapping[str, Any], column: str) -> Optional[str]:
    value = row.get(column)
    if value is None:
        return None
    return str(value)


def _required_text(row: Mapping[str, Any], column: str, table: str) -> str:
    value = _text(row, column)
    if not value:
        raise _reject(table, f"missing '{column}'", row)
    return value


def parse_timestamp(value: Any, column: str, table: str, row: Mapping[str, Any]) -> datetime:
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, str) and value:
        try:
            return ensure_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass
    raise _reject(table, f"unparseable timestamp in '{column}': {value!r}", row)


def _status(value: Any, row: Mapping[str, Any]) -> TaskStatus:
    if value is None or value == "":
        return TaskStatus.TODO
    raw = str(value).strip().lower()
    if raw in _STATUS_ALIASES:
        return _STATUS_ALIASES[raw]
    try:
        return TaskStatus(raw)
    except ValueError:
        raise _reject("tasks", f"unknown status {value!r}", row) from None


def _priority(value: Any, row: Mapping[str, Any]) -> TaskPriority:
    if value is None or value == "":
        return TaskPriority.MEDIUM
    try:
        return TaskPriority(str(value).strip().lower())
    except ValueError:
        raise _reject("tasks", f"unknown priority {value!r}", row) from None


def _team_role(value: Any, row: Mapping[str, Any]) -> TeamRole:
    if value is None or value == "":
        return TeamRole.MEMBER
    try:
        return TeamRole(str(value).strip().lower())
    except ValueError:
        raise _reject("team_members", f"unknown role {value!r}", row) from None


def _build(model: Any, table: str, row: Mapping[str, Any], **fields: Any) -> Any:
    try:
        return model(**fields)
    except ValidationError as e:
        raise _reject(table, "failed validation", row, validation_errors=e.errors()) from e


# ---------------------------------------------------------------------------
# Rows -> records
# ---------------------------------------------------------------------------

def task_from_row(row: Mapping[str, Any]) -> Task:
    c = TASK_FIELDS
    created_at = parse_timestamp(row.get(c["created_at"]), c["created_at"], "tasks", row)
    updated_raw = row.get(c["updated_at"])
    updated_at = (
        parse_timestamp(updated_raw, c["updated_at"], "tasks", row)
        if updated_raw else created_at
    )
    return _build(
        Task, "tasks", row,
        id=_required_text(row, c["id"], "tasks"),
        title=_text(row, c["title"]) or "",
        description=_text(row, c["description"]) or "",
        priority=_priority(row.get(c["priority"]), row),
        status=_status(row.get(c["status"]), row),
        due_date=parse_timestamp(row.get(c["due_date"]), c["due_date"], "tasks", row),
        created_at=created_at,
        updated_at=max(updated_at, created_at),
        created_by=_required_text(row, c["created_by"], "tasks"),
        assigned_to=_text(row, c["assigned_to"]) or None,
        team_id=_text(row, c["team_id"]) or None,
    )


def team_from_row(row: Mapping[str, Any]) -> Team:
    c = TEAM_FIELDS
    return _build(
        Team, "teams", row,
        id=_required_text(row, c["id"], "teams"),
        name=_required_text(row, c["name"], "teams"),
        description=_text(row, c["description"]) or None,
        created_at=parse_timestamp(row.get(c["created_at"]), c["created_at"], "teams", row),
        created_by=_required_text(row, c["created_by"], "teams"),
        join_code=_required_text(row, c["join_code"], "teams"),
        avatar=_text(row, c["avatar"]) or None,
    )


def profile_from_row(row: Mapping[str, Any]) -> MemberProfile:
    return MemberProfile(
        name=_text(row, "name") or "Unknown User",
        email=_text(row, "email") or "",
        avatar=_text(row, "avatar") or None,
    )


def member_from_row(
    row: Mapping[str, Any],
    profile: Optional[MemberProfile] = None,
) -> TeamMember:
    c = MEMBER_FIELDS
    return _build(
        TeamMember, "team_members", row,
        id=_required_text(row, c["id"], "team_members"),
        team_id=_required_text(row, c["team_id"], "team_members"),
        user_id=_required_text(row, c["user_id"], "team_members"),
        role=_team_role(row.get(c["role"]), row),
        joined_at=parse_timestamp(row.get(c["joined_at"]), c["joined_at"], "team_members", row),
        user=profile,
    )


# ---------------------------------------------------------------------------
# Records / field dicts -> rows
# ---------------------------------------------------------------------------

def _wire_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return ensure_aware(value).isoformat()
    return value


def fields_to_row(
    fields: Mapping[str, Any],
    field_map: Mapping[str, str],
    *,
    keep_none: bool,
) -> Dict[str, Any]:
    """
    Translate record fields to wire columns.

    ``keep_none=False`` drops absent optional values (inserts, where the
    server applies its defaults). ``keep_none=True`` sends them as null
    (partial updates, where None is an explicit clear).
    """
    row: Dict[str, Any] = {}
    for name, value in fields.items():
        column = field_map.get(name)
        if column is None:
            logger.debug(f"Field '{name}' has no wire column, skipped")
            continue
        if value is None and not keep_none:
            continue
        row[column] = _wire_value(value)
    return row


def task_to_row(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return fields_to_row(fields, TASK_FIELDS, keep_none=False)


def team_to_row(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return fields_to_row(fields, TEAM_FIELDS, keep_none=False)


def member_to_row(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return fields_to_row(fields, MEMBER_FIELDS, keep_none=False)


def patch_to_row(changes: Mapping[str, Any], field_map: Mapping[str, str]) -> Dict[str, Any]:
    return fields_to_row(changes, field_map, keep_none=True)
