"""Row-change notifications: "subscribe to changes on table T filtered by key".

Delivery is at-least-once and carries no row data. Subscribers treat every
notification as a hint to re-fetch authoritative state from the store.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from redis.asyncio import Redis
from redis.asyncio import from_url as redis_from_url

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "qa:changes"


@dataclass(frozen=True)
class ChangeNotification:
    table: str
    key: str
    event: str

    def to_dict(self) -> dict[str, str]:
        return {"table": self.table, "key": self.key, "event": self.event}


def _channel(table: str, key: str) -> str:
    return f"{CHANNEL_PREFIX}:{table}:{key}"


class Subscription:
    async def get(self, timeout: float | None = None) -> ChangeNotification | None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class ChangeFeed:
    async def connect(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def publish(self, notification: ChangeNotification) -> None:
        raise NotImplementedError

    async def subscribe(self, topics: Iterable[tuple[str, str]]) -> Subscription:
        raise NotImplementedError


class _LocalSubscription(Subscription):
    def __init__(self, feed: "LocalChangeFeed", topics: list[tuple[str, str]]) -> None:
        self._feed = feed
        self.topics = topics
        self.queue: asyncio.Queue[ChangeNotification] = asyncio.Queue()

    async def get(self, timeout: float | None = None) -> ChangeNotification | None:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        self._feed._detach(self)


class LocalChangeFeed(ChangeFeed):
    """In-process fan-out used with the memory store and in tests."""

    def __init__(self) -> None:
        self._subscribers: dict[tuple[str, str], set[_LocalSubscription]] = {}

    async def publish(self, notification: ChangeNotification) -> None:
        for subscription in list(self._subscribers.get((notification.table, notification.key), ())):
            subscription.queue.put_nowait(notification)

    async def subscribe(self, topics: Iterable[tuple[str, str]]) -> Subscription:
        subscription = _LocalSubscription(self, list(topics))
        for topic in subscription.topics:
            self._subscribers.setdefault(topic, set()).add(subscription)
        return subscription

    def _detach(self, subscription: _LocalSubscription) -> None:
        for topic in subscription.topics:
            subscribers = self._subscribers.get(topic)
            if not subscribers:
                continue
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[topic]


class _RedisSubscription(Subscription):
    def __init__(self, pubsub: Any) -> None:
        self._pubsub = pubsub

    async def get(self, timeout: float | None = None) -> ChangeNotification | None:
        message = await self._pubsub.get_message(
            ignore_subscribe_messages=True,
            timeout=timeout,
        )
        if not message or message.get("type") != "message":
            return None
        try:
            payload = json.loads(message.get("data") or "{}")
            return ChangeNotification(
                table=str(payload["table"]),
                key=str(payload["key"]),
                event=str(payload.get("event") or "update"),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("change_feed dropped malformed message data=%r", message.get("data"))
            return None

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe()
        finally:
            await self._pubsub.aclose()


class RedisChangeFeed(ChangeFeed):
    """Cross-process feed on top of redis pub/sub."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._redis: Redis | None = None

    async def connect(self) -> bool:
        if self._redis is not None:
            return True
        client = redis_from_url(self.url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except Exception:
            logger.exception("Failed to connect to Redis %s", self.url)
            await client.aclose()
            return False
        self._redis = client
        logger.info("Redis change feed connected")
        return True

    async def close(self) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.aclose()
        finally:
            self._redis = None

    async def ping(self) -> bool:
        if self._redis is None:
            return False
        try:
            await self._redis.ping()
            return True
        except Exception:
            logger.exception("Redis ping failed")
            return False

    def _client(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis change feed is not connected")
        return self._redis

    async def publish(self, notification: ChangeNotification) -> None:
        channel = _channel(notification.table, notification.key)
        try:
            await self._client().publish(channel, json.dumps(notification.to_dict()))
        except Exception:
            # Subscribers also poll, so a lost notification only delays convergence.
            logger.exception("Redis publish failed channel=%s", channel)

    async def subscribe(self, topics: Iterable[tuple[str, str]]) -> Subscription:
        pubsub = self._client().pubsub()
        await pubsub.subscribe(*[_channel(table, key) for table, key in topics])
        return _RedisSubscription(pubsub)


def build_change_feed(redis_url: str, *, store_backend: str) -> ChangeFeed:
    if store_backend == "memory" or not redis_url:
        return LocalChangeFeed()
    return RedisChangeFeed(redis_url)
