from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable

from .change_feed import ChangeFeed, Subscription

logger = logging.getLogger(__name__)


class StateSync:
    """Re-runs ``refresh`` on every change notification and at least once per poll interval.

    Notifications carry no data, so duplicates and reordering only cost an
    extra re-fetch. Refresh failures are logged and retried on the next
    cycle.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        topics: Iterable[tuple[str, str]],
        refresh: Callable[[], Awaitable[None]],
        *,
        poll_interval: float,
        name: str,
    ) -> None:
        self.feed = feed
        self.topics = list(topics)
        self.refresh = refresh
        self.poll_interval = poll_interval
        self.name = name
        self._subscription: Subscription | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._subscription = await self.feed.subscribe(self.topics)
        self._task = asyncio.create_task(self._run(), name=f"sync:{self.name}")

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                await subscription.close()
            except Exception:
                logger.exception("state_sync unsubscribe failed name=%s", self.name)

    async def _run(self) -> None:
        subscription = self._subscription
        while subscription is not None and not self._stopped:
            try:
                notification = await subscription.get(timeout=self.poll_interval)
                if notification is not None:
                    logger.debug(
                        "state_sync notified name=%s table=%s event=%s",
                        self.name,
                        notification.table,
                        notification.event,
                    )
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("state_sync refresh failed name=%s", self.name)
                await asyncio.sleep(self.poll_interval)
