"""
TaskProvider — the session's task cache.

Owns the task store, its coordinator and the ``tasks`` change feed. All writes
go through the coordinator; reads are derived views over ``store.list()``.
"""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Any, Callable, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from taskify.engine.context import UserContext, get_user_context
from taskify.engine.errors import InvalidTransitionError, NotFoundError, PreconditionFailedError
from taskify.engine.logging import AsyncLogQueue
from taskify.sync import views
from taskify.sync.coordinator import MutationCoordinator, MutationResult
from taskify.sync.feed import ChangeEvent, ChangeKind, ChangeTransport
from taskify.sync.models import Task, TaskDraft, TaskPatch, TaskPriority, TaskStatus, utcnow
from taskify.sync.notices import NoticeSink, info
from taskify.sync.provider import BaseProvider
from taskify.sync.remote import RemoteSyncAdapter
from taskify.sync.store import EntityStore

logger = logging.getLogger("taskify.sync.tasks")

ENTITY = "tasks"


class TaskProvider(BaseProvider):
    """Task cache for one signed-in session."""

    feed_table = "tasks"

    def __init__(
        self,
        adapter: RemoteSyncAdapter[Task],
        transport: ChangeTransport,
        *,
        scope: Optional[Mapping[str, Any]] = None,
        strict_status_transitions: bool = False,
        due_soon_days: int = 3,
        recent_limit: int = 5,
        notices: Optional[NoticeSink] = None,
        identity: Callable[[], Optional[UserContext]] = get_user_context,
        log_queue: Optional[AsyncLogQueue] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(transport, notices=notices, identity=identity, log_queue=log_queue)
        self._scope = dict(scope) if scope else None
        self._strict = strict_status_transitions
        self._due_soon_days = due_soon_days
        self._recent_limit = recent_limit
        self._clock = clock
        self.store: EntityStore[Task] = EntityStore("tasks")
        self.coordinator: MutationCoordinator[Task] = MutationCoordinator(
            self.store,
            adapter,
            scope=lambda: self._scope,
            entity=ENTITY,
            label="Task",
            notices=self._notices,
            identity=identity,
            log_queue=log_queue,
            clock=clock,
        )

    @property
    def tasks(self) -> List[Task]:
        return self.store.list()

    @property
    def pending(self) -> Set[str]:
        return self.coordinator.pending

    async def _load(self, reason: str) -> MutationResult[List[Task]]:
        return await self.coordinator.refresh(reason)

    # ── Mutations ──

    async def create_task(self, draft: Union[TaskDraft, Mapping[str, Any]]) -> MutationResult[Task]:
        """
        Create a task owned by the signed-in user. Without a user nothing is
        sent and a PreconditionFailedError result is returned.
        """
        user = self._identity()
        if user is None:
            return self._fail(ENTITY, "create", self._no_user_error(ENTITY, "create"), "Failed to create task")

        if not isinstance(draft, TaskDraft):
            try:
                draft = TaskDraft.model_validate(draft)
            except ValidationError as e:
                error = PreconditionFailedError(
                    "Invalid task", entity=ENTITY, operation="create",
                    reason="invalid_draft", validation_errors=e.errors(),
                )
                return self._fail(ENTITY, "create", error, "Failed to create task")

        fields = {**draft.model_dump(), "created_by": user.id}

        def provisional(temp_id: str) -> Task:
            now = self._clock()
            return Task(id=temp_id, created_at=now, updated_at=now, **fields)

        return await self.coordinator.create(fields, provisional)

    async def update_task(
        self,
        task_id: str,
        patch: Union[TaskPatch, Mapping[str, Any]],
    ) -> MutationResult[Task]:
        """Apply the fields present in ``patch``; explicit None clears a field."""
        if not isinstance(patch, TaskPatch):
            try:
                patch = TaskPatch.model_validate(patch)
            except ValidationError as e:
                error = PreconditionFailedError(
                    "Invalid task changes", entity=ENTITY, operation="update",
                    entity_id=task_id, reason="invalid_patch", validation_errors=e.errors(),
                )
                return self._fail(ENTITY, "update", error, "Failed to update task")

        current = self.store.get_by_id(task_id)
        if current is not None and patch.is_empty():
            return MutationResult.success(current)

        if current is not None and self._strict and patch.status is not None:
            if not views.is_transition_allowed(current.status, patch.status):
                error = InvalidTransitionError(
                    f"Cannot move a task from '{current.status.value}' to '{patch.status.value}'",
                    entity=ENTITY, operation="update", entity_id=task_id,
                    from_status=current.status.value, to_status=patch.status.value,
                )
                return self._fail(ENTITY, "update", error, "Failed to update task")

        return await self.coordinator.update(task_id, patch.changes())

    async def advance_status(self, task_id: str) -> MutationResult[Task]:
        """Move a task one step along the workflow (completed reopens to todo)."""
        current = self.store.get_by_id(task_id)
        if current is None:
            error = NotFoundError(
                f"Task '{task_id}' not found",
                entity=ENTITY, operation="update", entity_id=task_id,
            )
            return self._fail(ENTITY, "update", error, "Failed to update task")
        return await self.update_task(task_id, TaskPatch(status=views.next_status(current.status)))

    async def delete_task(self, task_id: str) -> MutationResult[Task]:
        return await self.coordinator.delete(task_id)

    # ── Queries ──

    def get_task_by_id(self, task_id: str) -> Optional[Task]:
        return self.store.get_by_id(task_id)

    def tasks_by_user(self, user_id: str) -> List[Task]:
        return views.assigned_to(user_id, self.store.list())

    def tasks_created_by(self, user_id: str) -> List[Task]:
        return views.created_by(user_id, self.store.list())

    def tasks_by_status(self, status: Union[TaskStatus, str]) -> List[Task]:
        return views.with_status(status, self.store.list())

    def overdue_tasks(self, now: Optional[datetime] = None) -> List[Task]:
        """Overdue tasks, most overdue first."""
        return views.by_due_date(views.overdue(now or self._clock(), self.store.list()))

    def due_soon_tasks(self, now: Optional[datetime] = None, days: Optional[int] = None) -> List[Task]:
        return views.due_soon(
            now or self._clock(),
            self.store.list(),
            self._due_soon_days if days is None else days,
        )

    def due_today_tasks(self, now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> List[Task]:
        return views.due_today(now or self._clock(), self.store.list(), tz)

    def recently_updated(self, limit: Optional[int] = None) -> List[Task]:
        return views.recently_updated(
            self.store.list(), self._recent_limit if limit is None else limit,
        )

    def search(
        self,
        text: str = "",
        status: Union[TaskStatus, str] = views.ALL,
        priority: Union[TaskPriority, str] = views.ALL,
    ) -> List[Task]:
        """Filtered tasks, soonest due first."""
        return views.by_due_date(views.filter_tasks(self.store.list(), text, status, priority))

    def member_stats(self, user_id: str) -> views.TaskStats:
        return views.member_stats(user_id, self.store.list())

    def team_completion_rate(self, member_ids: List[str]) -> int:
        return views.team_completion_rate(member_ids, self.store.list())

    def summary(
        self,
        now: Optional[datetime] = None,
        user_id: Optional[str] = None,
        tz: Optional[tzinfo] = None,
    ) -> Optional[views.TaskSummary]:
        """Dashboard counts for ``user_id`` (default: the signed-in user)."""
        if user_id is None:
            user = self._identity()
            if user is None:
                return None
            user_id = user.id
        return views.summarize(user_id, now or self._clock(), self.store.list(), tz)

    # ── Change feed ──

    def _announce(self, event: ChangeEvent) -> None:
        title = event.record.get("title") or ""
        if event.kind == ChangeKind.CREATED:
            self._notices.notify(info("New task created", f'"{title}" was added'))
        elif event.kind == ChangeKind.UPDATED:
            self._notices.notify(info("Task updated", f'"{title}" was updated'))
        else:
            self._notices.notify(info("Task deleted", "A task was removed"))
