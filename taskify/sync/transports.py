"""
Change transports — the push channels a ChangeFeedListener subscribes to.

InMemoryChangeHub:    in-process broadcast, used by tests and single-process runs
RedisChangeTransport: redis-py asyncio Pub/Sub, one channel per table

Both deliver plain dict payloads of the form
``{"eventType": "INSERT", "table": "tasks", "new": {...}, "old": {...}}``.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from taskify.sync.feed import ChangeEvent, Deliver, FeedState, StatusCallback

logger = logging.getLogger("taskify.sync.transports")


@dataclass
class _Subscription:
    table: str
    deliver: Deliver
    on_status: Optional[StatusCallback] = None

    def report(self, status: FeedState) -> None:
        if self.on_status is not None:
            self.on_status(status)


# ---------------------------------------------------------------------------
# In-process hub
# ---------------------------------------------------------------------------

class InMemoryChangeHub:
    """Synchronous fan-out of published payloads to every subscriber of a table."""

    def __init__(self):
        self._subscriptions: Dict[int, _Subscription] = {}
        self._ids = itertools.count(1)

    async def subscribe(
        self,
        table: str,
        deliver: Deliver,
        on_status: Optional[StatusCallback] = None,
    ) -> int:
        handle = next(self._ids)
        sub = _Subscription(table, deliver, on_status)
        self._subscriptions[handle] = sub
        sub.report(FeedState.SUBSCRIBED)
        return handle

    async def unsubscribe(self, handle: int) -> None:
        self._subscriptions.pop(handle, None)

    def publish(self, table: str, payload: Mapping[str, Any]) -> int:
        """Deliver ``payload`` to subscribers of ``table``. Returns the receiver count."""
        receivers = [s for s in self._subscriptions.values() if s.table == table]
        for sub in receivers:
            sub.deliver(payload)
        return len(receivers)

    def publish_event(self, event: ChangeEvent) -> int:
        return self.publish(event.table, event.to_payload())

    def report_status(self, status: FeedState) -> None:
        """Push a connection state change to every subscriber."""
        for sub in list(self._subscriptions.values()):
            sub.report(status)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions.values() if s.table == table)

    async def aclose(self) -> None:
        self._subscriptions.clear()


# ---------------------------------------------------------------------------
# Redis Pub/Sub
# ---------------------------------------------------------------------------

@dataclass
class _RedisSubscription(_Subscription):
    channel: str = ""
    pubsub: Any = None
    reader: Optional[asyncio.Task] = None


class RedisChangeTransport:
    """
    Change feed over Redis Pub/Sub.

    Each subscription owns a PubSub object and a reader task. When the
    stream fails or ends without unsubscribe(), the reader reports
    RECONNECTING, waits with capped exponential backoff, resubscribes and
    reports SUBSCRIBED again.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        channel_prefix: str = "taskify:changes:",
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        client: Optional[aioredis.Redis] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client or aioredis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
        )
        self._owns_client = client is None
        self._prefix = channel_prefix
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._sleep = sleep
        self._subscriptions: Dict[int, _RedisSubscription] = {}
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> "RedisChangeTransport":
        """Build from a RealtimeConfig."""
        return cls(
            config.redis_url,
            channel_prefix=config.channel_prefix,
            reconnect_delay=config.reconnect_delay,
            max_reconnect_delay=config.max_reconnect_delay,
            **kwargs,
        )

    def channel_for(self, table: str) -> str:
        return f"{self._prefix}{table}"

    async def subscribe(
        self,
        table: str,
        deliver: Deliver,
        on_status: Optional[StatusCallback] = None,
    ) -> int:
        channel = self.channel_for(table)
        pubsub = await self._open_pubsub(channel)

        handle = next(self._ids)
        sub = _RedisSubscription(table, deliver, on_status, channel=channel, pubsub=pubsub)
        sub.reader = asyncio.create_task(self._read(sub), name=f"taskify-redis-{channel}")
        self._subscriptions[handle] = sub
        sub.report(FeedState.SUBSCRIBED)
        logger.info(f"Subscribed to Redis channel '{channel}'")
        return handle

    async def unsubscribe(self, handle: int) -> None:
        sub = self._subscriptions.pop(handle, None)
        if sub is None:
            return
        if sub.reader is not None:
            sub.reader.cancel()
            try:
                await sub.reader
            except asyncio.CancelledError:
                pass
        await self._close_pubsub(sub)
        logger.info(f"Unsubscribed from Redis channel '{sub.channel}'")

    async def publish(self, event: ChangeEvent) -> int:
        """Publish a change event. Returns the number of Redis receivers."""
        message = json.dumps(event.to_payload(), default=str)
        return await self._client.publish(self.channel_for(event.table), message)

    async def aclose(self) -> None:
        for handle in list(self._subscriptions):
            await self.unsubscribe(handle)
        if self._owns_client:
            await self._client.aclose()

    # ── Reader ──

    async def _read(self, sub: _RedisSubscription) -> None:
        # Runs until unsubscribe() cancels it; any loss of the stream is retried.
        delay = self._reconnect_delay
        while True:
            try:
                async for message in sub.pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    payload = self._decode(message.get("data"), sub.channel)
                    if payload is not None:
                        sub.deliver(payload)
                    delay = self._reconnect_delay
                logger.warning(f"Redis stream for '{sub.channel}' ended; reconnecting in {delay}s")
            except RedisError as e:
                logger.warning(f"Redis channel '{sub.channel}' lost: {e}; reconnecting in {delay}s")
            sub.report(FeedState.RECONNECTING)

            while True:
                await self._sleep(delay)
                delay = min(delay * 2, self._max_reconnect_delay)
                try:
                    await self._resubscribe(sub)
                except RedisError as e:
                    logger.warning(f"Resubscribe to '{sub.channel}' failed: {e}")
                    continue
                sub.report(FeedState.SUBSCRIBED)
                logger.info(f"Resubscribed to Redis channel '{sub.channel}'")
                break

    async def _resubscribe(self, sub: _RedisSubscription) -> None:
        await self._close_pubsub(sub)
        sub.pubsub = await self._open_pubsub(sub.channel)

    async def _open_pubsub(self, channel: str) -> Any:
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(channel)
        except BaseException:
            await self._close_quietly(pubsub, channel)
            raise
        return pubsub

    @staticmethod
    async def _close_pubsub(sub: _RedisSubscription) -> None:
        await RedisChangeTransport._close_quietly(sub.pubsub, sub.channel)

    @staticmethod
    async def _close_quietly(pubsub: Any, channel: str) -> None:
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Closing pubsub for '{channel}' failed: {e}")

    @staticmethod
    def _decode(data: Any, channel: str) -> Optional[Dict[str, Any]]:
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        try:
            payload = json.loads(data)
        except (TypeError, ValueError):
            logger.warning(f"Dropped non-JSON message on '{channel}'")
            return None
        if not isinstance(payload, dict):
            logger.warning(f"Dropped non-object message on '{channel}'")
            return None
        return payload

    def active_channels(self) -> List[str]:
        return [s.channel for s in self._subscriptions.values()]
