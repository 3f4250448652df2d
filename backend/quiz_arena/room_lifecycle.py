"""Per-viewer room lifecycle: waiting -> ready -> counting_down -> starting -> playing -> finished.

Every member runs one of these against the shared store. Only the host
writes ``status`` and ``questions``; every other member mirrors the host's
writes from change notifications and polling. The countdown path is
automatic: once membership reaches the minimum, a short grace window arms
the countdown. ``force_start`` is the host shortening that same countdown,
never a second start path.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .change_feed import ChangeFeed
from .config import settings
from .errors import NotRoomHost, RoomStartConflict
from .runtime_state_sync import StateSync
from .runtime_types import LifecycleState, Question, Room, TransitionEvent
from .store import ROOM_PLAYERS, ROOMS, RoomStore
from .timers import TimerKey, TimerRegistry

logger = logging.getLogger(__name__)

QuestionSource = Callable[[int], Awaitable[list[Question]]]
EventSink = Callable[[dict[str, Any]], None]


class RoomLifecycle:
    def __init__(
        self,
        store: RoomStore,
        feed: ChangeFeed,
        room_id: str,
        user_id: str,
        *,
        question_source: QuestionSource,
        on_event: EventSink | None = None,
        on_playing: Callable[[Room], Awaitable[None]] | None = None,
        min_players: int = settings.min_players,
        total_questions: int = settings.total_questions,
        time_unit: float = settings.time_unit_seconds,
        ready_grace_units: int = settings.ready_grace_units,
        countdown_units: int = settings.countdown_units,
        force_start_units: int = settings.force_start_units,
        poll_interval: float = settings.sync_poll_interval_seconds,
    ) -> None:
        self.store = store
        self.room_id = room_id
        self.user_id = user_id
        self.question_source = question_source
        self.on_event = on_event
        self.on_playing = on_playing
        self.min_players = min_players
        self.total_questions = total_questions
        self.time_unit = time_unit
        self.ready_grace_units = ready_grace_units
        self.countdown_units = countdown_units
        self.force_start_units = force_start_units

        self.state: LifecycleState = "waiting"
        self.room: Room | None = None
        self.member_count = 0
        self.countdown_remaining: int | None = None
        self.last_error: str | None = None
        self.timers = TimerRegistry()
        self.lock = self.timers.lock
        self._start_task: asyncio.Task[None] | None = None
        self._sync = StateSync(
            feed,
            [(ROOMS, room_id), (ROOM_PLAYERS, room_id)],
            self.refresh,
            poll_interval=poll_interval,
            name=f"room:{room_id}:{user_id}",
        )

    @property
    def is_host(self) -> bool:
        return self.room is not None and self.room.host_id == self.user_id

    async def start(self) -> None:
        await self._sync.start()
        await self.refresh()

    async def stop(self) -> None:
        await self._sync.stop()
        self.timers.cancel_all()
        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()

    async def refresh(self) -> None:
        """Re-read the room and its roster and reconcile local state with them."""
        room = await self.store.get_room(self.room_id)
        members = await self.store.list_members(self.room_id) if room is not None else []
        async with self.lock:
            await self._apply(room, len(members))

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.on_event is not None:
            self.on_event(payload)

    def _transition(self, new_state: LifecycleState, **payload: Any) -> None:
        previous = self.state
        if previous == new_state:
            return
        self.state = new_state
        logger.info(
            "room_lifecycle transition room=%s user=%s %s->%s",
            self.room_id,
            self.user_id,
            previous,
            new_state,
        )
        self._emit(TransitionEvent("room", previous, new_state, payload).to_dict())

    async def _apply(self, room: Room | None, member_count: int) -> None:
        if self.state == "finished":
            return
        if room is None:
            self.timers.cancel_all()
            self._transition("finished", reason="room_missing")
            return

        self.room = room
        self.member_count = member_count

        if room.status == "finished":
            self.timers.cancel_all()
            self._transition("finished")
            return
        if room.status == "playing" and room.questions:
            if self.state != "playing":
                self.timers.cancel_all()
                self.countdown_remaining = None
                self._transition("playing", startedAt=room.started_at.isoformat() if room.started_at else None)
                if self.on_playing is not None:
                    await self.on_playing(room)
            return
        if self.state in ("playing", "starting"):
            return

        if member_count >= self.min_players:
            if self.state == "waiting":
                self._transition("ready", players=member_count)
                if self.is_host:
                    await self.store.set_room_status(self.room_id, "ready", expected=("waiting",))
                self.timers.schedule(
                    TimerKey(self.room_id, "grace"),
                    self.ready_grace_units * self.time_unit,
                    self._on_grace_elapsed,
                )
            return

        if self.state == "counting_down":
            self.timers.cancel_name("countdown")
            self.countdown_remaining = None
            self._transition("ready", reason="below_minimum", players=member_count)
        if self.state == "ready":
            self.timers.cancel_name("grace")
            self._transition("waiting", players=member_count)
        if self.is_host and room.status == "ready":
            await self.store.set_room_status(self.room_id, "waiting", expected=("ready",))

    async def _on_grace_elapsed(self, key: TimerKey) -> None:
        if self.state != "ready" or self.member_count < self.min_players:
            return
        self._begin_countdown(self.countdown_units)

    def _begin_countdown(self, units: int) -> None:
        self.timers.cancel_name("grace")
        self._transition("counting_down", seconds=units)
        self._arm_countdown(units)

    def _arm_countdown(self, remaining: int) -> None:
        self.timers.cancel_name("countdown")
        self.countdown_remaining = remaining
        self.timers.schedule(
            TimerKey(self.room_id, "countdown", remaining),
            self.time_unit,
            self._on_countdown_tick,
        )

    async def _on_countdown_tick(self, key: TimerKey) -> None:
        if self.state != "counting_down" or key.ordinal != self.countdown_remaining:
            return
        remaining = key.ordinal - 1
        if remaining > 0:
            self._emit({"type": "countdown", "roomId": self.room_id, "remaining": remaining})
            self._arm_countdown(remaining)
            return
        self.countdown_remaining = None
        self._transition("starting", host=self.is_host)
        if self.is_host:
            self._start_task = asyncio.create_task(
                self._attach_questions(),
                name=f"start:{self.room_id}",
            )

    async def _attach_questions(self) -> None:
        try:
            questions = await self.question_source(self.total_questions)
            claimed = await self.store.claim_room_start(self.room_id, self.user_id, questions)
        except Exception as exc:
            await self._start_failed(str(exc) or exc.__class__.__name__)
            return
        if not claimed:
            await self._start_failed("Room start was already claimed or the room moved on")
            await self.refresh()
            return
        logger.info("room_lifecycle questions attached room=%s count=%s", self.room_id, len(questions))
        async with self.lock:
            self.last_error = None
        await self.refresh()

    async def _start_failed(self, reason: str) -> None:
        logger.warning("room_lifecycle start failed room=%s reason=%s", self.room_id, reason)
        async with self.lock:
            self.last_error = reason
            self._emit({"type": "start_failed", "roomId": self.room_id, "error": reason})

    async def force_start(self) -> None:
        async with self.lock:
            if not self.is_host:
                raise NotRoomHost(f"Only the host can start room {self.room_id}")
            if self.state == "ready":
                self._begin_countdown(self.force_start_units)
            elif self.state == "counting_down":
                if (self.countdown_remaining or 0) > self.force_start_units:
                    self._arm_countdown(self.force_start_units)
                    self._emit(
                        {"type": "countdown", "roomId": self.room_id, "remaining": self.force_start_units}
                    )
            else:
                raise RoomStartConflict(f"Room {self.room_id} cannot start while {self.state}")

    async def retry_start(self) -> None:
        """Host-driven retry of a failed question attachment; errors surface to the caller."""
        async with self.lock:
            if not self.is_host:
                raise NotRoomHost(f"Only the host can start room {self.room_id}")
            if self.state != "starting":
                raise RoomStartConflict(f"Room {self.room_id} is {self.state}, not starting")
            if self._start_task is not None and not self._start_task.done():
                raise RoomStartConflict(f"Room {self.room_id} start is already in flight")
            self.last_error = None
        self._start_task = asyncio.create_task(self._attach_questions(), name=f"start:{self.room_id}")
        await self._start_task
        if self.last_error:
            raise RoomStartConflict(self.last_error)

    async def mark_finished(self) -> None:
        async with self.lock:
            if self.state == "finished":
                return
            self.timers.cancel_all()
            if self.is_host:
                await self.store.set_room_status(self.room_id, "finished", expected=("playing",))
            self._transition("finished")

    def snapshot(self) -> dict[str, Any]:
        return {
            "roomId": self.room_id,
            "state": self.state,
            "isHost": self.is_host,
            "playerCount": self.member_count,
            "minPlayers": self.min_players,
            "countdown": self.countdown_remaining,
            "lastError": self.last_error,
            "room": self.room.to_dict() if self.room else None,
        }
