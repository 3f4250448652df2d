from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimerKey:
    """Identity of one scheduled callback.

    ``scope`` is the room or round id, ``name`` the timer kind and
    ``ordinal`` the question number or countdown step the timer was armed
    for. Callbacks get their key back and compare it with current state, so
    a timer that outlived its state is recognised and dropped.
    """

    scope: str
    name: str
    ordinal: int = 0


TimerCallback = Callable[[TimerKey], Awaitable[None]]


class TimerRegistry:
    def __init__(self, lock: asyncio.Lock | None = None) -> None:
        self.lock = lock or asyncio.Lock()
        self._tasks: dict[TimerKey, asyncio.Task[None]] = {}

    def __contains__(self, key: TimerKey) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    @property
    def active_keys(self) -> list[TimerKey]:
        return [key for key, task in self._tasks.items() if not task.done()]

    def schedule(self, key: TimerKey, delay_s: float, callback: TimerCallback) -> None:
        self.cancel(key)

        async def runner() -> None:
            try:
                await asyncio.sleep(max(0.0, delay_s))
                async with self.lock:
                    await callback(key)
            except asyncio.CancelledError:
                return
            except Exception:
                logger.exception("timer callback failed key=%s", key)
            finally:
                if self._tasks.get(key) is current:
                    del self._tasks[key]

        current = asyncio.create_task(runner(), name=f"{key.scope}:{key.name}:{key.ordinal}")
        self._tasks[key] = current

    def cancel(self, key: TimerKey) -> None:
        task = self._tasks.pop(key, None)
        # A callback may reschedule or clear its own key; never cancel the running task.
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def cancel_where(self, predicate: Callable[[TimerKey], bool]) -> None:
        for key in [key for key in self._tasks if predicate(key)]:
            self.cancel(key)

    def cancel_name(self, name: str) -> None:
        self.cancel_where(lambda key: key.name == name)

    def cancel_all(self) -> None:
        self.cancel_where(lambda key: True)
