"""
Change Feed Listener — one long-lived subscription to row-change events.

Transports deliver raw payloads; the listener parses them into ChangeEvents
and passes them through an asyncio.Queue to a single consumer task that
awaits the registered callback. Delivery is at-least-once and unordered, so
callbacks are expected to re-fetch rather than patch.

States:
    DISCONNECTED -> CONNECTING -> SUBSCRIBED -> DISCONNECTED   (stop)
    SUBSCRIBED -> RECONNECTING -> SUBSCRIBED                   (reported by transport)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from taskify.engine.errors import RemoteUnavailableError
from taskify.engine.logging import AsyncLogQueue, log_change_event, push_entry

logger = logging.getLogger("taskify.sync.feed")


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"

    @classmethod
    def parse(cls, value: Any) -> "ChangeKind":
        """Accept wire names (INSERT/UPDATE/DELETE) and our own values."""
        raw = str(value or "").strip().lower()
        if raw in _WIRE_TO_KIND:
            return _WIRE_TO_KIND[raw]
        return cls(raw)

    @property
    def wire_name(self) -> str:
        return _KIND_TO_WIRE[self]


_WIRE_TO_KIND = {
    "insert": ChangeKind.CREATED,
    "update": ChangeKind.UPDATED,
    "delete": ChangeKind.DELETED,
}
_KIND_TO_WIRE = {kind: wire.upper() for wire, kind in _WIRE_TO_KIND.items()}


class FeedState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ChangeEvent:
    """A remote mutation notification for one row of one table."""

    kind: ChangeKind
    table: str
    new_record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)

    @property
    def record(self) -> Dict[str, Any]:
        """The affected row: the old row for deletes, the new row otherwise."""
        if self.kind == ChangeKind.DELETED:
            return self.old_record or self.new_record
        return self.new_record or self.old_record

    @property
    def record_id(self) -> Optional[str]:
        value = self.record.get("id")
        return str(value) if value is not None else None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], default_table: str = "") -> "ChangeEvent":
        """
        Parse ``{eventType, table, new, old}`` (``newRecord``/``oldRecord``
        are accepted too). Raises ValueError on anything else.
        """
        if not isinstance(payload, Mapping):
            raise ValueError(f"change payload must be a mapping, got {type(payload).__name__}")
        kind = ChangeKind.parse(payload.get("eventType") or payload.get("type") or payload.get("kind"))
        new = payload.get("new", payload.get("newRecord")) or {}
        old = payload.get("old", payload.get("oldRecord")) or {}
        if not isinstance(new, Mapping) or not isinstance(old, Mapping):
            raise ValueError("change payload records must be mappings")
        return cls(
            kind=kind,
            table=str(payload.get("table") or default_table),
            new_record=dict(new),
            old_record=dict(old),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "eventType": self.kind.wire_name,
            "table": self.table,
            "new": self.new_record,
            "old": self.old_record,
        }


Deliver = Callable[[Mapping[str, Any]], None]
StatusCallback = Callable[[FeedState], None]
ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


class ChangeTransport(Protocol):
    """A push channel of row-change payloads, one subscription per table."""

    async def subscribe(
        self,
        table: str,
        deliver: Deliver,
        on_status: Optional[StatusCallback] = None,
    ) -> Any: ...

    async def unsubscribe(self, handle: Any) -> None: ...


class ChangeFeedListener:
    """
    Owns exactly one transport subscription for one table.

    ``start()`` while already connecting or subscribed is a no-op, and
    ``stop()`` is idempotent; once ``stop()`` returns the callback never fires
    again, even for events that were already queued.
    """

    def __init__(
        self,
        transport: ChangeTransport,
        table: str,
        callback: ChangeCallback,
        *,
        name: Optional[str] = None,
        log_queue: Optional[AsyncLogQueue] = None,
    ):
        self._transport = transport
        self._table = table
        self._callback = callback
        self._name = name or f"{table}-listener"
        self._log_queue = log_queue
        self._state = FeedState.DISCONNECTED
        self._handle: Any = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._generation = 0
        self._received = 0
        self._dropped = 0

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def table(self) -> str:
        return self._table

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_active(self) -> bool:
        return self._state in (FeedState.SUBSCRIBED, FeedState.RECONNECTING)

    @property
    def received_count(self) -> int:
        return self._received

    @property
    def dropped_count(self) -> int:
        return self._dropped

    async def start(self) -> None:
        if self._state != FeedState.DISCONNECTED:
            return
        self._generation += 1
        generation = self._generation
        self._state = FeedState.CONNECTING
        self._queue = asyncio.Queue()

        try:
            handle = await self._transport.subscribe(
                self._table, self._deliver, self._on_status,
            )
        except Exception as e:
            if generation == self._generation:
                self._state = FeedState.DISCONNECTED
                self._queue = None
            raise RemoteUnavailableError(
                f"Could not subscribe to changes on '{self._table}': {e}",
                table=self._table, operation="subscribe",
            ) from e

        if generation != self._generation:
            # stop() ran while we were connecting.
            await self._transport.unsubscribe(handle)
            return

        self._handle = handle
        self._state = FeedState.SUBSCRIBED
        self._consumer = asyncio.create_task(
            self._consume(self._queue), name=f"taskify-feed-{self._name}",
        )
        logger.info(f"Change feed '{self._name}' subscribed to '{self._table}'")

    async def stop(self) -> None:
        if self._state == FeedState.DISCONNECTED:
            return
        self._generation += 1
        self._state = FeedState.DISCONNECTED
        handle, self._handle = self._handle, None
        consumer, self._consumer = self._consumer, None
        self._queue = None

        if handle is not None:
            try:
                await self._transport.unsubscribe(handle)
            except Exception:
                logger.exception(f"Change feed '{self._name}' failed to unsubscribe cleanly")

        if consumer is not None:
            consumer.cancel()
            if consumer is not asyncio.current_task():
                try:
                    await consumer
                except asyncio.CancelledError:
                    pass
        logger.info(f"Change feed '{self._name}' stopped")

    async def __aenter__(self) -> "ChangeFeedListener":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ── Transport callbacks ──

    def _deliver(self, payload: Mapping[str, Any]) -> None:
        queue = self._queue
        if queue is None or not self.is_active:
            self._dropped += 1
            return
        try:
            event = ChangeEvent.from_payload(payload, default_table=self._table)
        except ValueError as e:
            self._dropped += 1
            logger.warning(f"Change feed '{self._name}' dropped malformed payload: {e}")
            return
        if event.table != self._table:
            self._dropped += 1
            return
        self._received += 1
        queue.put_nowait(event)

    def _on_status(self, status: FeedState) -> None:
        if self._state == FeedState.DISCONNECTED:
            return
        if status in (FeedState.SUBSCRIBED, FeedState.RECONNECTING):
            if status != self._state:
                logger.info(f"Change feed '{self._name}': {self._state.value} -> {status.value}")
            self._state = status

    async def join(self) -> None:
        """Wait until every event queued so far has been handed to the callback."""
        queue = self._queue
        if queue is not None:
            await queue.join()

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            event: ChangeEvent = await queue.get()
            try:
                if queue is not self._queue:
                    return
                push_entry(
                    self._log_queue,
                    log_change_event(event.table, event.kind.value, event.record_id, self._name),
                )
                await self._callback(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    f"Change feed '{self._name}' callback failed for {event.kind.value} "
                    f"{event.record_id}"
                )
            finally:
                queue.task_done()
