"""
Taskify Session — one explicitly owned set of caches per signed-in user.

Lifecycle:
    session = SyncSession(config, user)
    await session.start()   # feeds subscribed, initial fetches done
    ...
    await session.close()   # feeds torn down once, HTTP / Redis clients closed,
                            # structured log flushed if this session started it

Independent sessions share nothing, so several can run side by side (tests,
multiple accounts).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx

from taskify.engine.config import TaskifyConfig, get_config
from taskify.engine.context import UserContext
from taskify.engine.logging import (
    AsyncLogQueue,
    configure_logging,
    get_log_queue,
    log_system_event,
    push_entry,
    shutdown_logging,
)
from taskify.sync.feed import ChangeTransport
from taskify.sync.notices import NoticeSink
from taskify.sync.remote import RestClient, task_adapter
from taskify.sync.tasks import TaskProvider
from taskify.sync.teams import TeamProvider
from taskify.sync.transports import InMemoryChangeHub, RedisChangeTransport

logger = logging.getLogger("taskify.session")


class SyncSession:
    """Builds and owns the REST client, change transport and both providers."""

    def __init__(
        self,
        config: Optional[TaskifyConfig] = None,
        user: Optional[UserContext] = None,
        *,
        transport: Optional[ChangeTransport] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        log_queue: Optional[AsyncLogQueue] = None,
        notices: Optional[NoticeSink] = None,
    ):
        self.config = config or get_config()
        self.user = user
        # The global queue is stopped on close only when this session started it.
        self._owns_log_queue = False
        if log_queue is None:
            already_running = get_log_queue() is not None
            log_queue = configure_logging(self.config.logging)
            self._owns_log_queue = log_queue is not None and not already_running
        self._log_queue = log_queue

        self.client = RestClient.from_config(
            self.config.remote,
            access_token=user.access_token if user else None,
            transport=http_transport,
            log_queue=self._log_queue,
        )

        self._owns_transport = transport is None
        if transport is None:
            if self.config.realtime.enabled:
                transport = RedisChangeTransport.from_config(self.config.realtime)
            else:
                transport = InMemoryChangeHub()
        self.transport = transport

        def identity() -> Optional[UserContext]:
            return self.user

        self.tasks = TaskProvider(
            task_adapter(self.client, self.config.sync.task_order),
            transport,
            strict_status_transitions=self.config.sync.strict_status_transitions,
            due_soon_days=self.config.sync.due_soon_days,
            recent_limit=self.config.sync.recent_limit,
            notices=notices,
            identity=identity,
            log_queue=self._log_queue,
        )
        self.teams = TeamProvider(
            self.client,
            transport,
            notices=notices,
            identity=identity,
            log_queue=self._log_queue,
        )
        self._started = False
        self._closed = False

    @property
    def is_started(self) -> bool:
        return self._started and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        if self._started:
            return
        if self._closed:
            raise RuntimeError("A closed session cannot be restarted")
        self._started = True
        start_time = time.monotonic()

        await self.tasks.start()
        await self.teams.start()

        duration_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            f"Session started for {self.user.id if self.user else 'anonymous'}: "
            f"{len(self.tasks.tasks)} tasks, {len(self.teams.teams)} teams ({duration_ms:.0f}ms)"
        )
        push_entry(self._log_queue, log_system_event("session_started", details=self.status()))

    async def close(self) -> None:
        """Tear down feeds and clients. Only the first call does anything."""
        if self._closed:
            return
        self._closed = True

        await self.tasks.close()
        await self.teams.close()
        if self._owns_transport:
            aclose = getattr(self.transport, "aclose", None)
            if aclose is not None:
                await aclose()
        await self.client.aclose()

        logger.info(f"Session closed for {self.user.id if self.user else 'anonymous'}")
        push_entry(self._log_queue, log_system_event("session_closed"))
        if self._owns_log_queue:
            shutdown_logging()

    async def __aenter__(self) -> "SyncSession":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def status(self) -> Dict[str, Any]:
        return {
            "user": self.user.to_dict() if self.user else None,
            "environment": self.config.environment,
            "tasks": len(self.tasks.tasks),
            "pending": sorted(self.tasks.pending),
            "teams": len(self.teams.teams),
            "task_feed": self.tasks.feed_state.value,
            "team_feed": self.teams.feed_state.value,
            "remote_circuit": self.client.breaker.state,
        }
