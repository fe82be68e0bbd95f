"""Taskify Sync — Entity store, remote adapter, change feed, coordinator, views and providers."""

from taskify.sync.coordinator import MutationCoordinator, MutationResult  # noqa: F401
from taskify.sync.feed import ChangeEvent, ChangeFeedListener, ChangeKind, FeedState  # noqa: F401
from taskify.sync.models import (  # noqa: F401
    Patch,
    Task,
    TaskDraft,
    TaskPatch,
    TaskPriority,
    TaskStatus,
    Team,
    TeamDraft,
    TeamMember,
    TeamPatch,
    TeamRole,
)
from taskify.sync.remote import RemoteSyncAdapter, RestClient  # noqa: F401
from taskify.sync.store import EntityStore  # noqa: F401
from taskify.sync.tasks import TaskProvider  # noqa: F401
from taskify.sync.teams import TeamProvider  # noqa: F401
from taskify.sync.transports import InMemoryChangeHub, RedisChangeTransport  # noqa: F401

__all__ = [
    "EntityStore",
    "RestClient",
    "RemoteSyncAdapter",
    "ChangeEvent",
    "ChangeKind",
    "ChangeFeedListener",
    "FeedState",
    "InMemoryChangeHub",
    "RedisChangeTransport",
    "MutationCoordinator",
    "MutationResult",
    "TaskProvider",
    "TeamProvider",
    "Patch",
    "Task",
    "TaskDraft",
    "TaskPatch",
    "TaskPriority",
    "TaskStatus",
    "Team",
    "TeamDraft",
    "TeamMember",
    "TeamPatch",
    "TeamRole",
]
