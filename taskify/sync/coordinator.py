"""
Optimistic Mutation Coordinator — local-first writes reconciled against the remote.

Pipeline (update):
    1. Look up the current record; absent -> NotFoundError result, no remote call
    2. Merge the changes (and a fresh updated_at) and write it to the store
    3. Send the same changes to the remote
    4. RemoteRejectedError   -> resynchronise (fetch_all + replace_all), failure result
       RemoteUnavailableError -> keep the optimistic record, mark it pending, failure result
    5. Success -> nothing to do; a later change event re-fetches the same state

create and delete follow the same shape. Nothing raised by the adapter escapes:
every call resolves to a MutationResult.

Provisional records (``tmp-`` ids) exist only locally. Updating one is refused
without a remote call; deleting one drops it locally once its create has
settled, and is refused while the create is still in flight.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Set,
    TypeVar,
)

from pydantic import BaseModel, ValidationError

from taskify.engine.context import UserContext, get_user_context
from taskify.engine.errors import (
    NotFoundError,
    PreconditionFailedError,
    RemoteRejectedError,
    RemoteUnavailableError,
    TaskifyError,
)
from taskify.engine.logging import AsyncLogQueue, log_mutation, log_sync_event, push_entry
from taskify.sync.models import utcnow
from taskify.sync.notices import LoggingNoticeSink, NoticeSink, failure, info
from taskify.sync.remote import RemoteSyncAdapter
from taskify.sync.store import EntityStore

logger = logging.getLogger("taskify.sync.coordinator")

E = TypeVar("E", bound=BaseModel)
T = TypeVar("T")

TEMP_ID_PREFIX = "tmp-"

Scope = Callable[[], Optional[Mapping[str, Any]]]


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(entity_id: str) -> bool:
    return entity_id.startswith(TEMP_ID_PREFIX)


def next_updated_at(previous: Optional[datetime], now: datetime) -> datetime:
    """``now``, nudged forward so it is strictly later than ``previous``."""
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


@dataclass(frozen=True)
class MutationResult(Generic[T]):
    """Typed outcome of a coordinated operation. Truthy on success."""

    ok: bool
    value: Optional[T] = None
    error: Optional[TaskifyError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "MutationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: TaskifyError) -> "MutationResult[T]":
        return cls(ok=False, error=error)

    def __bool__(self) -> bool:
        return self.ok

    @property
    def error_type(self) -> Optional[str]:
        return self.error.error_type if self.error else None


class MutationCoordinator(Generic[E]):
    """
    Owns all writes to one EntityStore.

    ``scope`` returns the filters used for every re-fetch, so resynchronising
    always reloads exactly the set the owning provider displays.
    """

    def __init__(
        self,
        store: EntityStore[E],
        adapter: RemoteSyncAdapter[E],
        *,
        scope: Optional[Scope] = None,
        entity: Optional[str] = None,
        label: Optional[str] = None,
        notices: Optional[NoticeSink] = None,
        identity: Callable[[], Optional[UserContext]] = get_user_context,
        log_queue: Optional[AsyncLogQueue] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._adapter = adapter
        self._scope = scope or (lambda: None)
        self._entity = entity or adapter.table
        self._label = label or self._entity.rstrip("s").replace("_", " ").capitalize()
        self._notices = notices or LoggingNoticeSink()
        self._identity = identity
        self._log_queue = log_queue
        self._clock = clock
        self._pending: Set[str] = set()
        self._in_flight: Set[str] = set()

    @property
    def store(self) -> EntityStore[E]:
        return self._store

    @property
    def pending(self) -> Set[str]:
        """Ids whose last optimistic write never reached the remote."""
        return set(self._pending)

    # ── Mutations ──

    async def create(
        self,
        fields: Mapping[str, Any],
        provisional: Optional[Callable[[str], E]] = None,
    ) -> MutationResult[E]:
        """
        Create a record. ``provisional`` builds the optimistic stand-in from a
        temporary id; it is discarded once the server record is adopted.
        """
        start_time = time.monotonic()
        temp_id: Optional[str] = None
        if provisional is not None:
            temp_id = new_temp_id()
            self._store.upsert(provisional(temp_id))
            self._in_flight.add(temp_id)

        try:
            created = await self._adapter.create(fields)
        except TaskifyError as e:
            self._in_flight.discard(temp_id)
            resynced = self._handle_failure("create", temp_id, e)
            if resynced:
                if temp_id is not None:
                    self._store.remove(temp_id)
                await self._resync("create_failed")
            return self._failed("create", temp_id, e, start_time, resynced=resynced)

        self._in_flight.discard(temp_id)
        if not await self._resync("create"):
            # Adopt directly when the re-fetch is not possible.
            if temp_id is not None:
                self._store.remove(temp_id)
            self._store.upsert(created)

        self._succeeded("create", created.id, start_time, fields_changed=sorted(fields))
        self._notices.notify(info(f"{self._label} created", self._describe(created)))
        return MutationResult.success(created)

    async def update(self, entity_id: str, changes: Mapping[str, Any]) -> MutationResult[E]:
        start_time = time.monotonic()
        current = self._store.get_by_id(entity_id)
        if current is None:
            return self._not_found("update", entity_id, start_time)
        if is_temp_id(entity_id):
            return self._not_persisted("update", entity_id, start_time)

        remote_changes: Dict[str, Any] = dict(changes)
        if "updated_at" in type(current).model_fields:
            remote_changes["updated_at"] = next_updated_at(
                getattr(current, "updated_at"), self._clock(),
            )

        try:
            merged = type(current).model_validate({**current.model_dump(), **remote_changes})
        except ValidationError as e:
            error = PreconditionFailedError(
                f"Invalid changes for {self._entity} '{entity_id}'",
                entity=self._entity, operation="update",
                reason="invalid_changes", validation_errors=e.errors(),
            )
            return self._failed("update", entity_id, error, start_time)

        self._store.upsert(merged)

        try:
            await self._adapter.update(entity_id, remote_changes)
        except TaskifyError as e:
            resynced = self._handle_failure("update", entity_id, e)
            if resynced and not await self._resync("update_failed"):
                self._store.upsert(current)
            return self._failed("update", entity_id, e, start_time, resynced=resynced)

        self._pending.discard(entity_id)
        self._succeeded("update", entity_id, start_time, fields_changed=sorted(changes))
        self._notices.notify(info(f"{self._label} updated", self._describe(merged)))
        return MutationResult.success(merged)

    async def delete(self, entity_id: str) -> MutationResult[E]:
        start_time = time.monotonic()
        current = self._store.get_by_id(entity_id)
        if current is None:
            return self._not_found("delete", entity_id, start_time)
        if is_temp_id(entity_id):
            if entity_id in self._in_flight:
                return self._not_persisted("delete", entity_id, start_time)
            # Its create failed; there is no remote row to delete.
            self._store.remove(entity_id)
            self._pending.discard(entity_id)
            self._succeeded("delete", entity_id, start_time)
            self._notices.notify(info(f"{self._label} discarded", self._describe(current)))
            return MutationResult.success(current)

        self._store.remove(entity_id)

        try:
            await self._adapter.delete(entity_id)
        except TaskifyError as e:
            resynced = self._handle_failure("delete", entity_id, e)
            if resynced and not await self._resync("delete_failed"):
                self._store.upsert(current)
            return self._failed("delete", entity_id, e, start_time, resynced=resynced)

        self._pending.discard(entity_id)
        self._succeeded("delete", entity_id, start_time)
        self._notices.notify(info(f"{self._label} deleted", self._describe(current)))
        return MutationResult.success(current)

    async def refresh(self, reason: str = "refresh") -> MutationResult[List[E]]:
        """Fetch the scoped set and replace the store with it."""
        start_time = time.monotonic()
        try:
            entities = await self._adapter.fetch_all(self._scope())
        except TaskifyError as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.warning(f"Refresh of {self._entity} failed ({reason}): {e.message}")
            push_entry(
                self._log_queue,
                log_sync_event(self._entity, 0, duration_ms, False, reason, error=e.message),
            )
            self._notices.notify(failure(f"Failed to load {self._entity.replace('_', ' ')}", e.message))
            return MutationResult.failure(e)

        self._store.replace_all(entities)
        # Unconfirmed local writes were overwritten by the fetched set.
        self._pending.clear()
        duration_ms = (time.monotonic() - start_time) * 1000
        logger.debug(f"Refreshed {len(entities)} {self._entity} ({reason})")
        push_entry(self._log_queue, log_sync_event(self._entity, len(entities), duration_ms, True, reason))
        return MutationResult.success(entities)

    # ── Internals ──

    async def _resync(self, reason: str) -> bool:
        """Re-fetch and replace. Failures are logged, never raised."""
        result = await self.refresh(reason)
        return result.ok

    def _handle_failure(self, operation: str, entity_id: Optional[str], error: TaskifyError) -> bool:
        """Returns True when the failure calls for rollback by resync."""
        if isinstance(error, RemoteUnavailableError):
            if entity_id is not None:
                self._pending.add(entity_id)
            logger.warning(
                f"{operation} {self._entity}/{entity_id} not persisted, keeping local state: "
                f"{error.message}"
            )
            return False
        if isinstance(error, RemoteRejectedError):
            logger.warning(f"{operation} {self._entity}/{entity_id} rejected: {error.message}")
            return True
        logger.error(f"{operation} {self._entity}/{entity_id} failed: {error!r}")
        return True

    def _not_found(self, operation: str, entity_id: str, start_time: float) -> MutationResult[E]:
        error = NotFoundError(
            f"{self._label} '{entity_id}' not found",
            entity=self._entity, operation=operation, entity_id=entity_id,
        )
        return self._failed(operation, entity_id, error, start_time)

    def _not_persisted(self, operation: str, entity_id: str, start_time: float) -> MutationResult[E]:
        error = PreconditionFailedError(
            f"{self._label} '{entity_id}' has not been saved yet",
            entity=self._entity, operation=operation, entity_id=entity_id,
            reason="not_persisted",
        )
        return self._failed(operation, entity_id, error, start_time)

    def _failed(
        self,
        operation: str,
        entity_id: Optional[str],
        error: TaskifyError,
        start_time: float,
        resynced: bool = False,
    ) -> MutationResult[E]:
        duration_ms = (time.monotonic() - start_time) * 1000
        push_entry(
            self._log_queue,
            log_mutation(
                self._entity, operation, entity_id, False, duration_ms,
                user_id=self._user_id(), resynced=resynced, error=error.to_dict(),
            ),
        )
        self._notices.notify(failure(f"Failed to {operation} {self._label.lower()}", error.message))
        return MutationResult.failure(error)

    def _succeeded(
        self,
        operation: str,
        entity_id: Optional[str],
        start_time: float,
        fields_changed: Optional[List[str]] = None,
    ) -> None:
        duration_ms = (time.monotonic() - start_time) * 1000
        logger.info(f"{operation} {self._entity}/{entity_id} succeeded in {duration_ms:.1f}ms")
        push_entry(
            self._log_queue,
            log_mutation(
                self._entity, operation, entity_id, True, duration_ms,
                user_id=self._user_id(), fields_changed=fields_changed,
            ),
        )

    def _user_id(self) -> Optional[str]:
        user = self._identity()
        return user.id if user is not None else None

    @staticmethod
    def _describe(entity: Any) -> str:
        for attr in ("title", "name"):
            value = getattr(entity, attr, None)
            if value:
                return str(value)
        return str(getattr(entity, "id", ""))
