"""Unit tests for taskify.sync.translate — row <-> record mapping."""

from datetime import datetime, timezone

import pytest

from taskify.engine.errors import RemoteRejectedError
from taskify.sync.models import MemberProfile, TaskPriority, TaskStatus, TeamRole
from taskify.sync.translate import (
    TASK_FIELDS,
    member_from_row,
    patch_to_row,
    profile_from_row,
    task_from_row,
    task_to_row,
    team_from_row,
)


class TestTaskFromRow:
    def test_full_row(self, task_row):
        task = task_from_row(task_row("t1", status="in-progress", priority="high", assigned_to="u2"))
        assert task.id == "t1"
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.priority == TaskPriority.HIGH
        assert task.assigned_to == "u2"

    def test_z_suffix_timestamps(self, task_row):
        task = task_from_row(task_row("t1", due_date="2024-06-01T10:00:00Z"))
        assert task.due_date == datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)

    def test_defaults_for_missing_optional_columns(self, task_row):
        row = task_row("t1")
        for column in ("description", "priority", "status", "updated_at"):
            row.pop(column)
        task = task_from_row(row)
        assert task.description == ""
        assert task.priority == TaskPriority.MEDIUM
        assert task.status == TaskStatus.TODO
        assert task.updated_at == task.created_at

    def test_status_aliases(self, task_row):
        assert task_from_row(task_row("t1", status="in_progress")).status == TaskStatus.IN_PROGRESS
        assert task_from_row(task_row("t1", status="DONE")).status == TaskStatus.COMPLETED

    def test_empty_assignee_is_none(self, task_row):
        assert task_from_row(task_row("t1", assigned_to="")).assigned_to is None

    def test_updated_at_clamped_to_created_at(self, task_row):
        row = task_row("t1", created_at="2024-05-10T00:00:00+00:00", updated_at="2024-05-01T00:00:00+00:00")
        task = task_from_row(row)
        assert task.updated_at == task.created_at

    def test_unknown_status(self, task_row):
        with pytest.raises(RemoteRejectedError, match="unknown status"):
            task_from_row(task_row("t1", status="archived"))

    def test_missing_id(self, task_row):
        with pytest.raises(RemoteRejectedError, match="missing 'id'"):
            task_from_row(task_row(""))

    def test_over_long_title_kept(self, task_row):
        task = task_from_row(task_row("t1", title="x" * 201))
        assert len(task.title) == 201

    def test_bad_timestamp(self, task_row):
        with pytest.raises(RemoteRejectedError) as exc_info:
            task_from_row(task_row("t1", due_date="next tuesday"))
        assert exc_info.value.context["record_id"] == "t1"


class TestTeamRows:
    def test_team_from_row(self):
        team = team_from_row({
            "id": "team-1", "name": "Core", "description": "", "created_at": "2024-05-01T00:00:00Z",
            "created_by": "u1", "join_code": "ABC123",
        })
        assert team.description is None
        assert team.join_code == "ABC123"

    def test_over_long_team_name_kept(self):
        team = team_from_row({
            "id": "team-1", "name": "n" * 300, "created_at": "2024-05-01T00:00:00Z",
            "created_by": "u1", "join_code": "ABC123",
        })
        assert len(team.name) == 300

    def test_team_missing_join_code(self):
        with pytest.raises(RemoteRejectedError):
            team_from_row({"id": "team-1", "name": "Core", "created_at": "2024-05-01T00:00:00Z", "created_by": "u1"})

    def test_member_with_profile(self):
        profile = profile_from_row({"id": "u2", "name": None, "email": "b@x.io"})
        member = member_from_row(
            {"id": "m1", "team_id": "team-1", "user_id": "u2", "role": "ADMIN", "joined_at": "2024-05-01T00:00:00Z"},
            profile,
        )
        assert member.role == TeamRole.ADMIN
        assert member.user == MemberProfile(name="Unknown User", email="b@x.io")

    def test_member_unknown_role(self):
        with pytest.raises(RemoteRejectedError, match="unknown role"):
            member_from_row({"id": "m1", "team_id": "t", "user_id": "u", "role": "owner", "joined_at": "2024-05-01T00:00:00Z"})


class TestToRow:
    def test_insert_drops_none_and_encodes(self):
        row = task_to_row({
            "title": "x", "status": TaskStatus.REVIEW, "assigned_to": None,
            "due_date": datetime(2024, 6, 1, tzinfo=timezone.utc), "unknown": 1,
        })
        assert row == {"title": "x", "status": "review", "due_date": "2024-06-01T00:00:00+00:00"}

    def test_patch_keeps_explicit_clear(self):
        assert patch_to_row({"assigned_to": None, "title": "y"}, TASK_FIELDS) == {"assigned_to": None, "title": "y"}
