"""
Shared lifecycle for session-scoped providers.

A provider owns one change feed listener and reloads its stores whenever the
feed reports a change. Reloads are coalesced: at most one runs at a time, and
any number of requests that arrive while one is running produce exactly one
more.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from taskify.engine.context import UserContext, get_user_context
from taskify.engine.errors import PreconditionFailedError, RemoteUnavailableError, TaskifyError
from taskify.engine.logging import AsyncLogQueue, log_mutation, push_entry
from taskify.sync.coordinator import MutationResult
from taskify.sync.feed import ChangeEvent, ChangeFeedListener, ChangeTransport, FeedState
from taskify.sync.notices import LoggingNoticeSink, NoticeSink, failure

logger = logging.getLogger("taskify.sync.provider")


class BaseProvider:
    """Subclasses set ``feed_table`` and implement ``_load`` and ``_announce``."""

    feed_table: str = ""

    def __init__(
        self,
        transport: ChangeTransport,
        *,
        notices: Optional[NoticeSink] = None,
        identity: Callable[[], Optional[UserContext]] = get_user_context,
        log_queue: Optional[AsyncLogQueue] = None,
    ):
        self._notices = notices or LoggingNoticeSink()
        self._identity = identity
        self._log_queue = log_queue
        self._listener = ChangeFeedListener(
            transport,
            self.feed_table,
            self._on_change,
            name=f"{type(self).__name__}:{self.feed_table}",
            log_queue=log_queue,
        )
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_again = False
        self._started = False
        self._loading = False

    # ── Lifecycle ──

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def feed_state(self) -> FeedState:
        return self._listener.state

    @property
    def listener(self) -> ChangeFeedListener:
        return self._listener

    async def start(self) -> MutationResult[List[Any]]:
        """Subscribe to the feed, then load. A feed failure does not stop the load."""
        if self._started:
            return MutationResult.success()
        self._started = True
        self._loading = True
        try:
            try:
                await self._listener.start()
            except RemoteUnavailableError as e:
                logger.warning(f"{type(self).__name__} running without live updates: {e.message}")
                self._notices.notify(failure("Live updates unavailable", e.message))
            return await self._load("initial")
        finally:
            self._loading = False

    async def close(self) -> None:
        """Stop the feed and any pending reload. Safe to call more than once."""
        self._started = False
        await self._listener.stop()
        task, self._refresh_task = self._refresh_task, None
        self._refresh_again = False
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "BaseProvider":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ── Reloading ──

    def request_refresh(self) -> asyncio.Task:
        """Schedule a reload, or fold this request into the one in flight."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_again = False
            self._refresh_task = asyncio.create_task(
                self._refresh_loop(), name=f"taskify-refresh-{self.feed_table}",
            )
        else:
            self._refresh_again = True
        return self._refresh_task

    async def refresh(self) -> MutationResult[List[Any]]:
        return await asyncio.shield(self.request_refresh())

    async def settle(self) -> None:
        """Wait for queued change events and the reloads they caused."""
        await self._listener.join()
        while self._refresh_task is not None and not self._refresh_task.done():
            await asyncio.shield(self._refresh_task)

    async def _refresh_loop(self) -> MutationResult[List[Any]]:
        while True:
            self._refresh_again = False
            result = await self._load("change_event")
            if not self._refresh_again:
                return result

    async def _on_change(self, event: ChangeEvent) -> None:
        self._announce(event)
        if self._started:
            self.request_refresh()

    # ── Helpers for subclasses ──

    def _fail(self, entity: str, operation: str, error: TaskifyError, title: str) -> MutationResult[Any]:
        """Log, notify and wrap a failure that never reached a coordinator."""
        user = self._identity()
        logger.warning(f"{operation} {entity} failed: {error.message}")
        push_entry(
            self._log_queue,
            log_mutation(
                entity, operation, error.context.get("entity_id"), False, 0.0,
                user_id=user.id if user is not None else None, error=error.to_dict(),
            ),
        )
        self._notices.notify(failure(title, error.message))
        return MutationResult.failure(error)

    @staticmethod
    def _no_user_error(entity: str, operation: str) -> PreconditionFailedError:
        return PreconditionFailedError(
            "You must be logged in",
            entity=entity, operation=operation, reason="missing_user_context",
        )

    async def _load(self, reason: str) -> MutationResult[List[Any]]:
        raise NotImplementedError

    def _announce(self, event: ChangeEvent) -> None:
        """Emit the notice for a remote change."""
