from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable

from fastapi import WebSocket, WebSocketDisconnect

from .bots import generate_bots
from .change_feed import ChangeFeed, build_change_feed
from .config import settings
from .errors import ArenaError, ProfileNotFound, RoomStartConflict, SessionNotFound, SettlementError
from .question_generation import build_question_set
from .room_directory import RoomDirectory
from .room_lifecycle import RoomLifecycle
from .round_engine import RoundEngine, RoundResult
from .runtime_state_sync import StateSync
from .runtime_types import GameMode, HistoryRecord, Invite, Participant, Profile, Question, Room
from .runtime_utils import random_id, utc_now
from .settlement import Settlement, SettlementReceipt
from .store import PLAYER_ANSWERS, ROOM_PLAYERS, InMemoryRoomStore, RoomStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuntimeOptions:
    min_players: int = settings.min_players
    max_players: int = settings.max_players
    total_questions: int = settings.total_questions
    time_unit: float = settings.time_unit_seconds
    question_time_units: int = settings.question_time_units
    intro_delay_units: int = settings.intro_delay_units
    reveal_delay_units: int = settings.reveal_delay_units
    ready_grace_units: int = settings.ready_grace_units
    countdown_units: int = settings.countdown_units
    force_start_units: int = settings.force_start_units
    poll_interval: float = settings.sync_poll_interval_seconds
    starting_balance: int = settings.starting_balance
    bot_count_min: int = settings.bot_count_min
    bot_count_max: int = settings.bot_count_max
    room_ttl_seconds: int = settings.room_ttl_seconds
    room_reaper_interval_seconds: int = settings.room_reaper_interval_seconds


@dataclass
class PlayerSession:
    """One player's view of one room (or one local bot game)."""

    id: str
    user_id: str
    mode: GameMode
    room_id: str
    lifecycle: RoomLifecycle | None = None
    engine: RoundEngine | None = None
    sync: StateSync | None = None
    receipt: SettlementReceipt | None = None
    settlement_error: str | None = None
    listeners: set[asyncio.Queue[dict[str, Any]]] = field(default_factory=set)
    closed: bool = False

    def snapshot(self) -> dict[str, Any]:
        return {
            "sessionId": self.id,
            "userId": self.user_id,
            "mode": self.mode,
            "roomId": self.room_id,
            "closed": self.closed,
            "lifecycle": self.lifecycle.snapshot() if self.lifecycle else None,
            "round": self.engine.snapshot() if self.engine else None,
            "settlement": self.receipt.to_dict() if self.receipt else None,
            "settlementError": self.settlement_error,
        }


class ArenaRuntime:
    def __init__(
        self,
        store: RoomStore,
        *,
        question_source: Callable[[int], Awaitable[list[Question]]] = build_question_set,
        options: RuntimeOptions | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.feed: ChangeFeed = store.feed
        self.question_source = question_source
        self.options = options or RuntimeOptions()
        self.rng = rng or random.Random()
        self.directory = RoomDirectory(store, max_players=self.options.max_players)
        self.settlement = Settlement(store)
        self.sessions: dict[str, PlayerSession] = {}
        self.sessions_lock = asyncio.Lock()
        self._reaper_task: asyncio.Task[None] | None = None

    @property
    def active_sessions_count(self) -> int:
        return sum(1 for session in self.sessions.values() if not session.closed)

    async def start(self) -> None:
        await self.feed.connect()
        await self.store.init()
        if self._reaper_task is None:
            self._reaper_task = asyncio.create_task(self._reaper_loop(), name="room-reaper")

    async def shutdown(self) -> None:
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        async with self.sessions_lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()
        for session in sessions:
            await self._close_session(session)

        await self.feed.close()
        await self.store.close()

    # Profiles and history

    async def ensure_profile(self, user_id: str, username: str) -> Profile:
        return await self.store.create_profile(user_id, username, balance=self.options.starting_balance)

    async def get_profile(self, user_id: str) -> Profile:
        profile = await self.store.get_profile(user_id)
        if profile is None:
            raise ProfileNotFound(user_id)
        return profile

    async def list_history(self, user_id: str, *, limit: int = 50) -> list[HistoryRecord]:
        return await self.store.list_history(user_id, limit=limit)

    async def list_invites(self, user_id: str) -> list[Invite]:
        return await self.directory.list_pending_invites(user_id)

    # Entering games

    async def find_game(self, user_id: str, mode: GameMode) -> PlayerSession:
        if mode == "bot":
            return await self.start_bot_game(user_id)
        await self.get_profile(user_id)
        room_id = await self.directory.find_or_create_room(user_id, mode)
        return await self._open_room_session(user_id, room_id)

    async def create_friends_game(self, host_id: str, invitees: Iterable[str] = ()) -> PlayerSession:
        await self.get_profile(host_id)
        room_id = await self.directory.create_game_room(host_id, "friends", invitees=invitees)
        return await self._open_room_session(host_id, room_id)

    async def join_room(self, user_id: str, room_id: str) -> PlayerSession:
        await self.get_profile(user_id)
        await self.directory.enter_room(room_id, user_id)
        return await self._open_room_session(user_id, room_id)

    async def send_invite(self, room_id: str, from_user_id: str, to_user_id: str) -> Invite:
        return await self.directory.send_invite(room_id, from_user_id, to_user_id)

    async def respond_to_invite(self, invite_id: str, user_id: str, accept: bool) -> PlayerSession | None:
        room = await self.directory.respond_to_invite(invite_id, user_id, accept)
        if room is None:
            return None
        return await self._open_room_session(user_id, room.id)

    async def start_bot_game(self, user_id: str) -> PlayerSession:
        profile = await self.get_profile(user_id)
        bots = generate_bots(
            self.rng.randint(self.options.bot_count_min, self.options.bot_count_max),
            self.rng,
        )
        me = Participant(
            id=profile.id,
            username=profile.username,
            avatar_url=profile.avatar_url,
            is_me=True,
        )
        questions = await self.question_source(self.options.total_questions)
        round_id = random_id()
        session = PlayerSession(id=random_id(), user_id=user_id, mode="bot", room_id=round_id)
        session.engine = self._build_engine(session, round_id, questions, [me, *bots], stake=0)
        async with self.sessions_lock:
            self.sessions[session.id] = session
        logger.info("runtime bot game session=%s user=%s bots=%s", session.id, user_id, len(bots))
        await session.engine.start()
        return session

    async def _open_room_session(self, user_id: str, room_id: str) -> PlayerSession:
        async with self.sessions_lock:
            for existing in self.sessions.values():
                if existing.user_id == user_id and existing.room_id == room_id and not existing.closed:
                    return existing
            room = await self.directory.get_room(room_id)
            session = PlayerSession(id=random_id(), user_id=user_id, mode=room.mode, room_id=room_id)
            self.sessions[session.id] = session

        session.lifecycle = RoomLifecycle(
            self.store,
            self.feed,
            room_id,
            user_id,
            question_source=self.question_source,
            on_event=lambda payload: self._emit(session, payload),
            on_playing=lambda started_room: self._on_room_playing(session, started_room),
            min_players=self.options.min_players,
            total_questions=self.options.total_questions,
            time_unit=self.options.time_unit,
            ready_grace_units=self.options.ready_grace_units,
            countdown_units=self.options.countdown_units,
            force_start_units=self.options.force_start_units,
            poll_interval=self.options.poll_interval,
        )
        logger.info("runtime room session=%s user=%s room=%s", session.id, user_id, room_id)
        await session.lifecycle.start()
        return session

    def _build_engine(
        self,
        session: PlayerSession,
        round_id: str,
        questions: list[Question],
        participants: list[Participant],
        *,
        stake: int,
    ) -> RoundEngine:
        return RoundEngine(
            round_id,
            questions,
            participants,
            me_id=session.user_id,
            mode=session.mode,
            stake=stake,
            room_id=session.room_id,
            store=self.store if session.mode != "bot" else None,
            rng=self.rng,
            on_event=lambda payload: self._emit(session, payload),
            on_finished=lambda result: self._on_round_finished(session, result),
            on_surrender=lambda participant, result: self._on_surrender(session, result),
            time_unit=self.options.time_unit,
            question_time_units=self.options.question_time_units,
            intro_delay_units=self.options.intro_delay_units,
            reveal_delay_units=self.options.reveal_delay_units,
        )

    async def _on_room_playing(self, session: PlayerSession, room: Room) -> None:
        if session.engine is not None or session.closed or not room.questions:
            return
        players = await self.directory.get_room_players(room.id, viewer_id=session.user_id)
        if not any(player.id == session.user_id for player in players):
            logger.warning("runtime room started without user session=%s room=%s", session.id, room.id)
            return
        session.engine = self._build_engine(session, room.id, room.questions, players, stake=room.bet_amount)
        session.sync = StateSync(
            self.feed,
            [(PLAYER_ANSWERS, room.id), (ROOM_PLAYERS, room.id)],
            session.engine.refresh_remote,
            poll_interval=self.options.poll_interval,
            name=f"round:{room.id}:{session.user_id}",
        )
        await session.sync.start()
        await session.engine.start()

    async def _settle(self, session: PlayerSession, result: RoundResult) -> None:
        try:
            session.receipt = await self.settlement.settle_round(result, session.user_id)
        except SettlementError as exc:
            session.settlement_error = str(exc)
            self._emit(session, {"type": "settlement_failed", "error": str(exc)})
            return
        self._emit(session, {"type": "settled", **session.receipt.to_dict()})

    async def _on_round_finished(self, session: PlayerSession, result: RoundResult) -> None:
        await self._settle(session, result)
        if session.sync is not None:
            await session.sync.stop()
        if session.lifecycle is not None:
            await session.lifecycle.mark_finished()

    async def _on_surrender(self, session: PlayerSession, result: RoundResult) -> None:
        await self._settle(session, result)
        if session.sync is not None:
            await session.sync.stop()
        if session.lifecycle is not None:
            await session.lifecycle.stop()

    # Session operations

    def get_session(self, session_id: str) -> PlayerSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def _engine_for(self, session: PlayerSession) -> RoundEngine:
        if session.engine is None:
            raise RoomStartConflict(f"Round for room {session.room_id} has not started")
        return session.engine

    def _lifecycle_for(self, session: PlayerSession) -> RoomLifecycle:
        if session.lifecycle is None:
            raise RoomStartConflict("Bot games have no room lifecycle")
        return session.lifecycle

    async def submit_answer(self, session_id: str, answer_index: int) -> bool:
        return await self._engine_for(self.get_session(session_id)).submit_answer(answer_index)

    async def surrender(self, session_id: str) -> bool:
        return await self._engine_for(self.get_session(session_id)).surrender()

    async def force_start(self, session_id: str) -> None:
        await self._lifecycle_for(self.get_session(session_id)).force_start()

    async def retry_start(self, session_id: str) -> None:
        await self._lifecycle_for(self.get_session(session_id)).retry_start()

    async def retry_settlement(self, session_id: str) -> SettlementReceipt:
        """Resume a settlement that failed part-way; finished steps are not repeated."""
        session = self.get_session(session_id)
        if session.receipt is not None:
            return session.receipt
        result = session.engine.result if session.engine is not None else None
        if result is None:
            raise SettlementError(session.user_id, [], "round has not ended")
        session.settlement_error = None
        await self._settle(session, result)
        if session.receipt is None:
            raise SettlementError(session.user_id, [], session.settlement_error or "settlement failed")
        return session.receipt

    async def leave(self, session_id: str) -> PlayerSession:
        """Leave a room: surrender a running round, or give up the seat before it starts."""
        session = self.get_session(session_id)
        engine = session.engine
        if engine is not None and engine.phase != "finished":
            await engine.surrender()
        elif session.lifecycle is not None and session.lifecycle.state not in ("playing", "finished"):
            await self.directory.leave_room(session.room_id, session.user_id)

        async with self.sessions_lock:
            self.sessions.pop(session.id, None)
        await self._close_session(session)
        logger.info("runtime left session=%s user=%s room=%s", session.id, session.user_id, session.room_id)
        return session

    async def _close_session(self, session: PlayerSession) -> None:
        if session.closed:
            return
        session.closed = True
        if session.sync is not None:
            await session.sync.stop()
        if session.lifecycle is not None:
            await session.lifecycle.stop()
        if session.engine is not None:
            await session.engine.stop()
        self._emit(session, {"type": "closed", "sessionId": session.id})

    # Event stream

    def _emit(self, session: PlayerSession, payload: dict[str, Any]) -> None:
        for queue in list(session.listeners):
            queue.put_nowait(payload)

    def subscribe(self, session_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.get_session(session_id).listeners.add(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        session = self.sessions.get(session_id)
        if session is not None:
            session.listeners.discard(queue)

    async def _send_safe(self, websocket: WebSocket, data: dict[str, Any], session_id: str) -> bool:
        try:
            await websocket.send_json(data)
            return True
        except Exception as exc:
            logger.debug("[SEND_FAIL] session=%s reason=%r", session_id, exc)
            return False

    async def handle_websocket(self, websocket: WebSocket, session_id: str) -> None:
        await websocket.accept()
        try:
            session = self.get_session(session_id)
        except SessionNotFound:
            await self._send_safe(
                websocket,
                {"type": "error", "code": "SESSION_NOT_FOUND", "message": "Session not found"},
                session_id,
            )
            await websocket.close(code=1008)
            return

        queue = self.subscribe(session.id)
        pump = asyncio.create_task(self._pump_events(websocket, session, queue), name=f"ws:{session.id}")
        await self._send_safe(websocket, {"type": "state", "state": session.snapshot()}, session.id)
        try:
            while True:
                raw = await websocket.receive_text()
                await self._handle_message(websocket, session, raw)
        except WebSocketDisconnect:
            logger.info("runtime websocket closed session=%s", session.id)
        finally:
            pump.cancel()
            self.unsubscribe(session.id, queue)

    async def _pump_events(
        self,
        websocket: WebSocket,
        session: PlayerSession,
        queue: asyncio.Queue[dict[str, Any]],
    ) -> None:
        while True:
            event = await queue.get()
            if not await self._send_safe(websocket, {"type": "event", "event": event}, session.id):
                return
            await self._send_safe(websocket, {"type": "state", "state": session.snapshot()}, session.id)
            if event.get("type") == "closed":
                return

    async def _handle_message(self, websocket: WebSocket, session: PlayerSession, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_safe(
                websocket,
                {"type": "error", "code": "INVALID_MESSAGE", "message": "Message is not JSON"},
                session.id,
            )
            return
        if not isinstance(message, dict):
            return

        kind = str(message.get("type") or "")
        try:
            if kind == "answer":
                accepted = await self.submit_answer(session.id, int(message.get("answerIndex")))
                await self._send_safe(websocket, {"type": "answer_ack", "accepted": accepted}, session.id)
            elif kind == "surrender":
                await self.surrender(session.id)
            elif kind == "forceStart":
                await self.force_start(session.id)
            elif kind == "retryStart":
                await self.retry_start(session.id)
            elif kind == "leave":
                await self.leave(session.id)
            elif kind == "ping":
                await self._send_safe(websocket, {"type": "pong"}, session.id)
            elif kind == "state":
                await self._send_safe(websocket, {"type": "state", "state": session.snapshot()}, session.id)
            else:
                await self._send_safe(
                    websocket,
                    {"type": "error", "code": "UNKNOWN_MESSAGE", "message": f"Unknown message type {kind!r}"},
                    session.id,
                )
        except (ArenaError, TypeError, ValueError) as exc:
            await self._send_safe(
                websocket,
                {"type": "error", "code": exc.__class__.__name__, "message": str(exc)},
                session.id,
            )

    # Abandoned rooms

    async def reap_abandoned_rooms(self) -> list[str]:
        """Close open rooms that nobody sits in once they outlive the room TTL."""
        cutoff = utc_now() - timedelta(seconds=self.options.room_ttl_seconds)
        reaped: list[str] = []
        for room_id in await self.store.list_abandoned_rooms(cutoff):
            if await self.store.set_room_status(room_id, "finished", expected=("waiting", "ready")):
                reaped.append(room_id)
        if reaped:
            logger.info("runtime reaped abandoned rooms count=%s", len(reaped))
        return reaped

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self.options.room_reaper_interval_seconds)
            try:
                await self.reap_abandoned_rooms()
            except Exception:
                logger.exception("runtime room reaper failed")


def build_runtime() -> ArenaRuntime:
    feed = build_change_feed(settings.redis_url, store_backend=settings.store_backend)
    if settings.store_backend == "memory":
        return ArenaRuntime(InMemoryRoomStore(feed))

    from .database import PostgresRoomStore

    return ArenaRuntime(PostgresRoomStore(feed))
