from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

import asyncpg

from . import database_profiles, database_rooms
from .change_feed import ChangeFeed, ChangeNotification
from .config import settings
from .errors import ProfileNotFound
from .models import schema_statements
from .runtime_types import (
    AnswerRecord,
    GameMode,
    HistoryRecord,
    Invite,
    InviteStatus,
    MemberStatus,
    Membership,
    Profile,
    Question,
    Room,
    RoomStatus,
    ScoreLine,
)
from .runtime_utils import avatar_url_for, random_player_code, sanitize_username
from .store import GAME_INVITES, PLAYER_ANSWERS, PROFILES, ROOM_PLAYERS, ROOMS

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None


def _normalized_database_url() -> str:
    url = settings.database_url.strip()
    if url.startswith("postgresql+asyncpg://"):
        return "postgresql://" + url[len("postgresql+asyncpg://") :]
    return url


async def _get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(dsn=_normalized_database_url(), min_size=1, max_size=10)
    return _pool


async def get_db_pool() -> asyncpg.Pool:
    return await _get_pool()


async def init_db() -> None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        for statement in schema_statements():
            await conn.execute(statement)
    logger.info("Database schema ready")


async def close_db() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def ping_db() -> bool:
    try:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")
        return True
    except Exception:
        logger.exception("Database ping failed")
        return False


class PostgresRoomStore:
    """RoomStore over the shared asyncpg pool; every write is announced on the change feed."""

    def __init__(self, feed: ChangeFeed) -> None:
        self.feed = feed

    async def _notify(self, table: str, key: str, event: str) -> None:
        await self.feed.publish(ChangeNotification(table=table, key=key, event=event))

    async def init(self) -> None:
        await init_db()

    async def ping(self) -> bool:
        return await ping_db()

    async def close(self) -> None:
        await close_db()

    async def get_profile(self, user_id: str) -> Profile | None:
        return await database_profiles.get_profile(await _get_pool(), user_id)

    async def create_profile(self, user_id: str, username: str, *, balance: int) -> Profile:
        profile = await database_profiles.create_profile(
            await _get_pool(),
            user_id=user_id,
            username=sanitize_username(username),
            avatar_url=avatar_url_for(user_id),
            balance=balance,
            player_code=random_player_code(),
        )
        await self._notify(PROFILES, user_id, "insert")
        return profile

    async def deduct_balance(self, user_id: str, amount: int) -> int | None:
        balance = await database_profiles.deduct_balance(await _get_pool(), user_id, amount)
        if balance is not None:
            await self._notify(PROFILES, user_id, "update")
        return balance

    async def add_balance(self, user_id: str, amount: int) -> int:
        balance = await database_profiles.add_balance(await _get_pool(), user_id, amount)
        if balance is None:
            raise ProfileNotFound(user_id)
        await self._notify(PROFILES, user_id, "update")
        return balance

    async def record_game_played(self, user_id: str, *, won: bool) -> Profile:
        profile = await database_profiles.record_game_played(await _get_pool(), user_id, won=won)
        if profile is None:
            raise ProfileNotFound(user_id)
        await self._notify(PROFILES, user_id, "update")
        return profile

    async def append_history(self, record: HistoryRecord) -> HistoryRecord:
        return await database_profiles.append_history(await _get_pool(), record)

    async def list_history(self, user_id: str, *, limit: int = 50) -> list[HistoryRecord]:
        return await database_profiles.list_history(await _get_pool(), user_id, limit=limit)

    async def find_open_room(self, mode: GameMode, *, max_players: int) -> Room | None:
        return await database_rooms.find_open_room(await _get_pool(), mode, max_players=max_players)

    async def find_seated_room(self, user_id: str, mode: GameMode) -> Room | None:
        return await database_rooms.find_seated_room(await _get_pool(), user_id, mode)

    async def create_room(self, host_id: str, mode: GameMode, bet_amount: int) -> Room:
        room = await database_rooms.create_room(
            await _get_pool(),
            host_id=host_id,
            mode=mode,
            bet_amount=bet_amount,
        )
        await self._notify(ROOMS, room.id, "insert")
        return room

    async def get_room(self, room_id: str) -> Room | None:
        return await database_rooms.get_room(await _get_pool(), room_id)

    async def set_room_status(
        self,
        room_id: str,
        status: RoomStatus,
        *,
        expected: Iterable[RoomStatus] | None = None,
    ) -> bool:
        updated = await database_rooms.set_room_status(
            await _get_pool(),
            room_id,
            status,
            expected=expected,
        )
        if updated:
            await self._notify(ROOMS, room_id, "update")
        return updated

    async def claim_room_start(self, room_id: str, host_id: str, questions: list[Question]) -> bool:
        claimed = await database_rooms.claim_room_start(await _get_pool(), room_id, host_id, questions)
        if claimed:
            await self._notify(ROOMS, room_id, "update")
        return claimed

    async def upsert_member(self, room_id: str, user_id: str, *, max_players: int | None = None) -> bool:
        inserted = await database_rooms.upsert_member(
            await _get_pool(),
            room_id,
            user_id,
            max_players=max_players,
        )
        if inserted:
            await self._notify(ROOM_PLAYERS, room_id, "insert")
        return inserted

    async def remove_member(self, room_id: str, user_id: str) -> bool:
        removed = await database_rooms.remove_member(await _get_pool(), room_id, user_id)
        if removed:
            await self._notify(ROOM_PLAYERS, room_id, "delete")
        return removed

    async def set_member_status(self, room_id: str, user_id: str, status: MemberStatus) -> None:
        if await database_rooms.set_member_status(await _get_pool(), room_id, user_id, status):
            await self._notify(ROOM_PLAYERS, room_id, "update")

    async def list_members(self, room_id: str) -> list[Membership]:
        return await database_rooms.list_members(await _get_pool(), room_id)

    async def record_answer(self, answer: AnswerRecord) -> bool:
        inserted = await database_rooms.record_answer(await _get_pool(), answer)
        if inserted:
            await self._notify(PLAYER_ANSWERS, answer.room_id, "insert")
        return inserted

    async def answer_stats(self, room_id: str) -> dict[str, ScoreLine]:
        return await database_rooms.answer_stats(await _get_pool(), room_id)

    async def create_invite(self, room_id: str, from_user_id: str, to_user_id: str) -> Invite:
        invite = await database_rooms.create_invite(
            await _get_pool(),
            room_id=room_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
        )
        await self._notify(GAME_INVITES, to_user_id, "insert")
        return invite

    async def get_invite(self, invite_id: str) -> Invite | None:
        return await database_rooms.get_invite(await _get_pool(), invite_id)

    async def list_pending_invites(self, user_id: str) -> list[Invite]:
        return await database_rooms.list_pending_invites(await _get_pool(), user_id)

    async def set_invite_status(
        self,
        invite_id: str,
        status: InviteStatus,
        *,
        expected: InviteStatus = "pending",
    ) -> bool:
        invite = await database_rooms.set_invite_status(
            await _get_pool(),
            invite_id,
            status,
            expected=expected,
        )
        if invite is None:
            return False
        await self._notify(GAME_INVITES, invite.to_user_id, "update")
        return True

    async def list_abandoned_rooms(self, created_before: datetime) -> list[str]:
        return await database_rooms.list_abandoned_rooms(await _get_pool(), created_before)
