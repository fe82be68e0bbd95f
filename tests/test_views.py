"""Unit tests for taskify.sync.views — due-date windows, search, stats and status workflow."""

from datetime import datetime, timedelta, timezone

import pytest

from taskify.sync import views
from taskify.sync.models import Task, TaskPriority, TaskStatus

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


def _task(task_id, due, status=TaskStatus.TODO, **overrides):
    fields = dict(
        id=task_id, title=f"Task {task_id}", due_date=due, status=status,
        created_at=NOW - timedelta(days=10), updated_at=NOW - timedelta(days=10),
        created_by="u1",
    )
    fields.update(overrides)
    return Task(**fields)


class TestOverdue:
    def test_example(self):
        tasks = [
            _task("1", NOW - timedelta(days=1)),
            _task("2", NOW - timedelta(days=1), TaskStatus.COMPLETED),
            _task("3", NOW + timedelta(days=1)),
        ]
        assert [t.id for t in views.overdue(NOW, tasks)] == ["1"]

    def test_due_exactly_now_is_not_overdue(self):
        assert views.is_overdue(_task("1", NOW), NOW) is False

    def test_one_microsecond_past(self):
        assert views.is_overdue(_task("1", NOW - timedelta(microseconds=1)), NOW) is True

    def test_naive_now_treated_as_utc(self):
        assert views.is_overdue(_task("1", NOW - timedelta(hours=1)), NOW.replace(tzinfo=None))


class TestDueWindows:
    def setup_method(self):
        self.tasks = [
            _task("late", NOW - timedelta(hours=1)),
            _task("d3", NOW + timedelta(days=3)),
            _task("d1", NOW + timedelta(days=1)),
            _task("now", NOW),
            _task("d4", NOW + timedelta(days=4)),
            _task("done", NOW + timedelta(days=1), TaskStatus.COMPLETED),
        ]

    def test_due_within_inclusive(self):
        ids = [t.id for t in views.due_within(NOW, NOW + timedelta(days=3), self.tasks)]
        assert ids == ["d3", "d1", "now"]

    def test_due_soon_sorted(self):
        assert [t.id for t in views.due_soon(NOW, self.tasks)] == ["now", "d1", "d3"]
        assert [t.id for t in views.due_soon(NOW, self.tasks, days=0)] == ["now"]

    def test_due_today_uses_now_timezone(self):
        tasks = [
            _task("early", NOW.replace(hour=0, minute=30)),
            _task("tomorrow", NOW + timedelta(days=1)),
            _task("late", NOW.replace(hour=23, minute=59)),
        ]
        assert [t.id for t in views.due_today(NOW, tasks)] == ["early", "late"]

    def test_due_today_in_other_zone(self):
        tokyo = timezone(timedelta(hours=9))
        # 23:30 UTC on the 14th is the 15th in Tokyo
        task = _task("x", datetime(2024, 5, 14, 23, 30, tzinfo=timezone.utc))
        assert views.due_today(NOW, [task]) == []
        assert views.due_today(NOW, [task], tz=tokyo) == [task]


class TestOrdering:
    def test_by_recency_stable(self):
        a = _task("a", NOW, updated_at=NOW - timedelta(days=1))
        b = _task("b", NOW, updated_at=NOW)
        c = _task("c", NOW, updated_at=NOW - timedelta(days=1))
        assert [t.id for t in views.by_recency([a, b, c])] == ["b", "a", "c"]

    def test_recently_updated_limit(self):
        tasks = [_task(str(i), NOW, updated_at=NOW - timedelta(days=i)) for i in range(8)]
        assert [t.id for t in views.recently_updated(tasks)] == ["0", "1", "2", "3", "4"]
        assert views.recently_updated(tasks, limit=0) == []

    def test_by_due_date(self):
        tasks = [_task("b", NOW + timedelta(days=2)), _task("a", NOW)]
        assert [t.id for t in views.by_due_date(tasks)] == ["a", "b"]


class TestSelection:
    def setup_method(self):
        self.tasks = [
            _task("1", NOW, title="Write REPORT", assigned_to="u1", priority=TaskPriority.HIGH),
            _task("2", NOW, description="report appendix", assigned_to="u2", status=TaskStatus.REVIEW),
            _task("3", NOW, title="Plan", created_by="u2", assigned_to="u1"),
        ]

    def test_assigned_and_created(self):
        assert [t.id for t in views.assigned_to("u1", self.tasks)] == ["1", "3"]
        assert [t.id for t in views.created_by("u2", self.tasks)] == ["3"]

    def test_with_status(self):
        assert [t.id for t in views.with_status("review", self.tasks)] == ["2"]

    def test_search_case_insensitive_title_and_description(self):
        assert [t.id for t in views.filter_tasks(self.tasks, search="report")] == ["1", "2"]

    def test_all_disables_filters(self):
        assert len(views.filter_tasks(self.tasks, "", views.ALL, views.ALL)) == 3

    def test_combined_filters(self):
        assert [t.id for t in views.filter_tasks(self.tasks, "report", priority="high")] == ["1"]
        assert views.filter_tasks(self.tasks, "plan", status=TaskStatus.COMPLETED) == []

    def test_unknown_status_filter(self):
        with pytest.raises(ValueError):
            views.filter_tasks(self.tasks, status="archived")


class TestStats:
    def test_completion_rate_rounds(self):
        tasks = [
            _task("1", NOW, TaskStatus.COMPLETED),
            _task("2", NOW),
            _task("3", NOW),
        ]
        assert views.completion_rate(tasks) == 33
        assert views.completion_rate(tasks[:1] + tasks[:1] + tasks[1:2]) == 67
        assert views.completion_rate([]) == 0

    def test_half_rounds_up(self):
        done = [_task(str(i), NOW, TaskStatus.COMPLETED) for i in range(1)]
        open_ = [_task(f"o{i}", NOW) for i in range(7)]
        # 1/8 = 12.5%
        assert views.completion_rate(done + open_) == 13

    def test_member_stats(self):
        tasks = [
            _task("1", NOW, TaskStatus.COMPLETED, assigned_to="u1"),
            _task("2", NOW, TaskStatus.IN_PROGRESS, assigned_to="u1"),
            _task("3", NOW, TaskStatus.REVIEW, assigned_to="u1"),
            _task("4", NOW, TaskStatus.TODO, assigned_to="u1"),
            _task("5", NOW, TaskStatus.TODO, assigned_to="u2"),
        ]
        stats = views.member_stats("u1", tasks)
        assert stats == views.TaskStats(total=4, todo=1, in_progress=1, review=1, completed=1, completion_rate=25)
        assert views.member_stats("nobody", tasks) == views.TaskStats()

    def test_team_completion_rate(self):
        tasks = [
            _task("1", NOW, TaskStatus.COMPLETED, assigned_to="u1"),
            _task("2", NOW, TaskStatus.TODO, assigned_to="u2"),
            _task("3", NOW, TaskStatus.COMPLETED, assigned_to="u2"),
        ]
        # (100 + 50 + 0) / 3
        assert views.team_completion_rate(["u1", "u2", "u3"], tasks) == 50
        assert views.team_completion_rate([], tasks) == 0

    def test_summarize(self):
        tasks = [
            _task("1", NOW - timedelta(days=1), assigned_to="u1"),
            _task("2", NOW + timedelta(hours=2), assigned_to="u1"),
            _task("3", NOW, TaskStatus.COMPLETED, assigned_to="u1", created_by="u2"),
            _task("4", NOW + timedelta(days=3), assigned_to="u2"),
        ]
        summary = views.summarize("u1", NOW, tasks)
        assert summary == views.TaskSummary(assigned=3, created=3, overdue=1, completed=1, due_today=1)


class TestStatusWorkflow:
    def test_next_status_cycle(self):
        assert views.next_status("todo") == TaskStatus.IN_PROGRESS
        assert views.next_status(TaskStatus.IN_PROGRESS) == TaskStatus.REVIEW
        assert views.next_status(TaskStatus.REVIEW) == TaskStatus.COMPLETED
        assert views.next_status(TaskStatus.COMPLETED) == TaskStatus.TODO

    def test_transitions(self):
        assert views.is_transition_allowed("todo", "in-progress")
        assert views.is_transition_allowed("review", "review")
        assert not views.is_transition_allowed("todo", "completed")
        assert views.is_transition_allowed(TaskStatus.COMPLETED, TaskStatus.TODO)
