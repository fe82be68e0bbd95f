"""
Derived View Engine — pure functions over a snapshot of tasks.

Nothing here keeps state or touches the store; providers call these on the
current ``store.list()`` whenever a view is needed. Every filter preserves the
input order unless it says it sorts.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Union

from taskify.sync.models import Task, TaskPriority, TaskStatus, ensure_aware

ALL = "all"


# ---------------------------------------------------------------------------
# Due dates
# ---------------------------------------------------------------------------

def is_overdue(task: Task, now: datetime) -> bool:
    """Strictly past due and not completed. Due exactly at ``now`` is not overdue."""
    return not task.is_completed and task.due_date < ensure_aware(now)


def overdue(now: datetime, tasks: Iterable[Task]) -> List[Task]:
    return [t for t in tasks if is_overdue(t, now)]


def due_within(now: datetime, window_end: datetime, tasks: Iterable[Task]) -> List[Task]:
    """Open tasks with ``now <= due_date <= window_end`` (both ends inclusive)."""
    start, end = ensure_aware(now), ensure_aware(window_end)
    return [t for t in tasks if not t.is_completed and start <= t.due_date <= end]


def due_soon(now: datetime, tasks: Iterable[Task], days: int = 3) -> List[Task]:
    """Open tasks due in the next ``days`` days, soonest first."""
    return by_due_date(due_within(now, ensure_aware(now) + timedelta(days=days), tasks))


def due_today(now: datetime, tasks: Iterable[Task], tz: Optional[tzinfo] = None) -> List[Task]:
    """
    Open tasks due on the same calendar day as ``now``. Both timestamps are
    converted to ``tz`` (default: the timezone of ``now``) before the time of
    day is dropped.
    """
    now = ensure_aware(now)
    zone = tz or now.tzinfo
    today = now.astimezone(zone).date()
    return [
        t for t in tasks
        if not t.is_completed and t.due_date.astimezone(zone).date() == today
    ]


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def by_recency(tasks: Iterable[Task]) -> List[Task]:
    """Most recently updated first; ties keep their input order."""
    return sorted(tasks, key=lambda t: t.updated_at, reverse=True)


def recently_updated(tasks: Iterable[Task], limit: int = 5) -> List[Task]:
    return by_recency(tasks)[:max(limit, 0)]


def by_due_date(tasks: Iterable[Task]) -> List[Task]:
    """Earliest due first; ties keep their input order."""
    return sorted(tasks, key=lambda t: t.due_date)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def assigned_to(user_id: str, tasks: Iterable[Task]) -> List[Task]:
    return [t for t in tasks if t.assigned_to == user_id]


def created_by(user_id: str, tasks: Iterable[Task]) -> List[Task]:
    return [t for t in tasks if t.created_by == user_id]


def with_status(status: Union[TaskStatus, str], tasks: Iterable[Task]) -> List[Task]:
    status = TaskStatus(status)
    return [t for t in tasks if t.status == status]


def filter_tasks(
    tasks: Iterable[Task],
    search: str = "",
    status: Union[TaskStatus, str] = ALL,
    priority: Union[TaskPriority, str] = ALL,
) -> List[Task]:
    """
    Case-insensitive substring search over title and description, combined
    with optional status / priority filters. ``"all"`` disables a filter.
    """
    needle = search.strip().lower()
    want_status = None if status == ALL else TaskStatus(status)
    want_priority = None if priority == ALL else TaskPriority(priority)

    results = []
    for task in tasks:
        if needle and needle not in task.title.lower() and needle not in task.description.lower():
            continue
        if want_status is not None and task.status != want_status:
            continue
        if want_priority is not None and task.priority != want_priority:
            continue
        results.append(task)
    return results


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def completion_rate(tasks: Iterable[Task]) -> int:
    """Percent of tasks completed, rounded half up. 0 for no tasks."""
    tasks = list(tasks)
    if not tasks:
        return 0
    completed = sum(1 for t in tasks if t.is_completed)
    return _round_half_up(100 * completed / len(tasks))


@dataclass(frozen=True)
class TaskStats:
    total: int = 0
    todo: int = 0
    in_progress: int = 0
    review: int = 0
    completed: int = 0
    completion_rate: int = 0


def member_stats(user_id: str, tasks: Iterable[Task]) -> TaskStats:
    """Per-status counts and completion rate of the tasks assigned to one user."""
    mine = assigned_to(user_id, tasks)
    counts: Dict[TaskStatus, int] = {s: 0 for s in TaskStatus}
    for task in mine:
        counts[task.status] += 1
    return TaskStats(
        total=len(mine),
        todo=counts[TaskStatus.TODO],
        in_progress=counts[TaskStatus.IN_PROGRESS],
        review=counts[TaskStatus.REVIEW],
        completed=counts[TaskStatus.COMPLETED],
        completion_rate=completion_rate(mine),
    )


def team_completion_rate(member_ids: Sequence[str], tasks: Iterable[Task]) -> int:
    """Mean of the members' completion rates, rounded half up. 0 for no members."""
    if not member_ids:
        return 0
    tasks = list(tasks)
    rates = [member_stats(uid, tasks).completion_rate for uid in member_ids]
    return _round_half_up(sum(rates) / len(rates))


@dataclass(frozen=True)
class TaskSummary:
    assigned: int
    created: int
    overdue: int
    completed: int
    due_today: int


def summarize(user_id: str, now: datetime, tasks: Iterable[Task], tz: Optional[tzinfo] = None) -> TaskSummary:
    tasks = list(tasks)
    mine = assigned_to(user_id, tasks)
    return TaskSummary(
        assigned=len(mine),
        created=len(created_by(user_id, tasks)),
        overdue=len(overdue(now, mine)),
        completed=sum(1 for t in mine if t.is_completed),
        due_today=len(due_today(now, mine, tz)),
    )


# ---------------------------------------------------------------------------
# Status workflow
# ---------------------------------------------------------------------------

STATUS_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.TODO: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.REVIEW}),
    TaskStatus.REVIEW: frozenset({TaskStatus.COMPLETED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.TODO}),
}

_FORWARD = {
    TaskStatus.TODO: TaskStatus.IN_PROGRESS,
    TaskStatus.IN_PROGRESS: TaskStatus.REVIEW,
    TaskStatus.REVIEW: TaskStatus.COMPLETED,
    TaskStatus.COMPLETED: TaskStatus.TODO,
}


def next_status(status: Union[TaskStatus, str]) -> TaskStatus:
    """The single step a task card offers; completed tasks reopen to todo."""
    return _FORWARD[TaskStatus(status)]


def is_transition_allowed(current: Union[TaskStatus, str], target: Union[TaskStatus, str]) -> bool:
    current, target = TaskStatus(current), TaskStatus(target)
    return current == target or target in STATUS_TRANSITIONS[current]
