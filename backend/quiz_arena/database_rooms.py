from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Iterable

import asyncpg

from .runtime_types import (
    AnswerRecord,
    Invite,
    Membership,
    Question,
    Room,
    ScoreLine,
)
from .runtime_utils import random_id

logger = logging.getLogger(__name__)

_ROOM_SELECT = """
    SELECT r.id, r.host_id, r.mode, r.status, r.bet_amount, r.questions_json,
           r.created_at, r.started_at,
           (SELECT COUNT(*) FROM room_players p WHERE p.room_id = r.id) AS player_count
    FROM rooms r
"""


def _decode_questions(raw: str | None) -> list[Question] | None:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        logger.warning("rooms.questions_json is not valid JSON")
        return None
    if not isinstance(payload, list):
        return None
    return [Question.from_dict(item) for item in payload]


def _room_from_row(row: Any) -> Room:
    return Room(
        id=row["id"],
        host_id=row["host_id"],
        mode=row["mode"],
        status=row["status"],
        bet_amount=int(row["bet_amount"]),
        created_at=row["created_at"],
        questions=_decode_questions(row["questions_json"]),
        started_at=row["started_at"],
        player_count=int(row["player_count"]),
    )


def _invite_from_row(row: Any) -> Invite:
    return Invite(
        id=row["id"],
        room_id=row["room_id"],
        from_user_id=row["from_user_id"],
        to_user_id=row["to_user_id"],
        status=row["status"],
        created_at=row["created_at"],
    )


async def get_room(pool: asyncpg.Pool, room_id: str) -> Room | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(_ROOM_SELECT + " WHERE r.id = $1", room_id)
    return _room_from_row(row) if row else None


async def find_open_room(pool: asyncpg.Pool, mode: str, *, max_players: int) -> Room | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            _ROOM_SELECT
            + """
            WHERE r.mode = $1
              AND r.status IN ('waiting', 'ready')
              AND (SELECT COUNT(*) FROM room_players p WHERE p.room_id = r.id) < $2
            ORDER BY r.created_at ASC
            LIMIT 1
            """,
            mode,
            int(max_players),
        )
    return _room_from_row(row) if row else None


async def find_seated_room(pool: asyncpg.Pool, user_id: str, mode: str) -> Room | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            _ROOM_SELECT
            + """
            WHERE r.mode = $2
              AND r.status IN ('waiting', 'ready')
              AND EXISTS (
                  SELECT 1 FROM room_players p WHERE p.room_id = r.id AND p.user_id = $1
              )
            ORDER BY r.created_at ASC
            LIMIT 1
            """,
            user_id,
            mode,
        )
    return _room_from_row(row) if row else None


async def create_room(pool: asyncpg.Pool, *, host_id: str, mode: str, bet_amount: int) -> Room:
    room_id = random_id()
    async with pool.acquire() as conn:
        await conn.execute(
            "INSERT INTO rooms (id, host_id, mode, bet_amount) VALUES ($1, $2, $3, $4)",
            room_id,
            host_id,
            mode,
            int(bet_amount),
        )
        row = await conn.fetchrow(_ROOM_SELECT + " WHERE r.id = $1", room_id)
    return _room_from_row(row)


async def set_room_status(
    pool: asyncpg.Pool,
    room_id: str,
    status: str,
    *,
    expected: Iterable[str] | None = None,
) -> bool:
    async with pool.acquire() as conn:
        if expected is None:
            result = await conn.execute(
                "UPDATE rooms SET status = $2 WHERE id = $1",
                room_id,
                status,
            )
        else:
            result = await conn.execute(
                "UPDATE rooms SET status = $2 WHERE id = $1 AND status = ANY($3::text[])",
                room_id,
                status,
                list(expected),
            )
    return result.endswith(" 1")


async def claim_room_start(
    pool: asyncpg.Pool,
    room_id: str,
    host_id: str,
    questions: list[Question],
) -> bool:
    payload = json.dumps([question.to_dict() for question in questions], ensure_ascii=False)
    async with pool.acquire() as conn:
        result = await conn.execute(
            """
            UPDATE rooms
            SET questions_json = $3, status = 'playing', started_at = NOW()
            WHERE id = $1
              AND host_id = $2
              AND status IN ('waiting', 'ready')
              AND questions_json IS NULL
            """,
            room_id,
            host_id,
            payload,
        )
    return result.endswith(" 1")


async def upsert_member(
    pool: asyncpg.Pool,
    room_id: str,
    user_id: str,
    *,
    max_players: int | None = None,
) -> bool:
    async with pool.acquire() as conn:
        if max_players is not None:
            return await _seat_member(conn, room_id, user_id, int(max_players))
        result = await conn.execute(
            """
            INSERT INTO room_players (room_id, user_id)
            VALUES ($1, $2)
            ON CONFLICT (room_id, user_id) DO NOTHING
            """,
            room_id,
            user_id,
        )
    return result.endswith(" 1")


async def _seat_member(conn: asyncpg.Connection, room_id: str, user_id: str, max_players: int) -> bool:
    # The row lock serializes seat checks with claim_room_start and other joiners.
    async with conn.transaction():
        status = await conn.fetchval("SELECT status FROM rooms WHERE id = $1 FOR UPDATE", room_id)
        if status not in ("waiting", "ready"):
            return False
        seated = await conn.fetchval("SELECT COUNT(*) FROM room_players WHERE room_id = $1", room_id)
        if int(seated) >= max_players:
            return False
        result = await conn.execute(
            """
            INSERT INTO room_players (room_id, user_id)
            VALUES ($1, $2)
            ON CONFLICT (room_id, user_id) DO NOTHING
            """,
            room_id,
            user_id,
        )
    return result.endswith(" 1")


async def remove_member(pool: asyncpg.Pool, room_id: str, user_id: str) -> bool:
    async with pool.acquire() as conn:
        result = await conn.execute(
            "DELETE FROM room_players WHERE room_id = $1 AND user_id = $2",
            room_id,
            user_id,
        )
    return result.endswith(" 1")


async def set_member_status(pool: asyncpg.Pool, room_id: str, user_id: str, status: str) -> bool:
    async with pool.acquire() as conn:
        result = await conn.execute(
            """
            UPDATE room_players SET status = $3
            WHERE room_id = $1 AND user_id = $2 AND status <> $3
            """,
            room_id,
            user_id,
            status,
        )
    return result.endswith(" 1")


async def list_members(pool: asyncpg.Pool, room_id: str) -> list[Membership]:
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT room_id, user_id, joined_at, status
            FROM room_players
            WHERE room_id = $1
            ORDER BY joined_at ASC, id ASC
            """,
            room_id,
        )
    return [
        Membership(
            room_id=row["room_id"],
            user_id=row["user_id"],
            joined_at=row["joined_at"],
            status=row["status"],
        )
        for row in rows
    ]


async def record_answer(pool: asyncpg.Pool, answer: AnswerRecord) -> bool:
    async with pool.acquire() as conn:
        result = await conn.execute(
            """
            INSERT INTO player_answers (room_id, user_id, question_index, answer_index, is_correct)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (room_id, user_id, question_index) DO NOTHING
            """,
            answer.room_id,
            answer.user_id,
            int(answer.question_index),
            answer.answer_index,
            bool(answer.is_correct),
        )
    return result.endswith(" 1")


async def answer_stats(pool: asyncpg.Pool, room_id: str) -> dict[str, ScoreLine]:
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT user_id,
                   COUNT(*) FILTER (WHERE is_correct) AS correct,
                   COUNT(*) FILTER (WHERE NOT is_correct) AS wrong
            FROM player_answers
            WHERE room_id = $1
            GROUP BY user_id
            """,
            room_id,
        )
    return {
        row["user_id"]: ScoreLine(correct=int(row["correct"]), wrong=int(row["wrong"]))
        for row in rows
    }


async def create_invite(
    pool: asyncpg.Pool,
    *,
    room_id: str,
    from_user_id: str,
    to_user_id: str,
) -> Invite:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO game_invites (id, room_id, from_user_id, to_user_id)
            VALUES ($1, $2, $3, $4)
            RETURNING id, room_id, from_user_id, to_user_id, status, created_at
            """,
            random_id(),
            room_id,
            from_user_id,
            to_user_id,
        )
    return _invite_from_row(row)


async def get_invite(pool: asyncpg.Pool, invite_id: str) -> Invite | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """
            SELECT id, room_id, from_user_id, to_user_id, status, created_at
            FROM game_invites WHERE id = $1
            """,
            invite_id,
        )
    return _invite_from_row(row) if row else None


async def list_pending_invites(pool: asyncpg.Pool, user_id: str) -> list[Invite]:
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT id, room_id, from_user_id, to_user_id, status, created_at
            FROM game_invites
            WHERE to_user_id = $1 AND status = 'pending'
            ORDER BY created_at DESC
            """,
            user_id,
        )
    return [_invite_from_row(row) for row in rows]


async def set_invite_status(
    pool: asyncpg.Pool,
    invite_id: str,
    status: str,
    *,
    expected: str,
) -> Invite | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """
            UPDATE game_invites SET status = $2
            WHERE id = $1 AND status = $3
            RETURNING id, room_id, from_user_id, to_user_id, status, created_at
            """,
            invite_id,
            status,
            expected,
        )
    return _invite_from_row(row) if row else None


async def list_abandoned_rooms(pool: asyncpg.Pool, created_before: datetime) -> list[str]:
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT r.id FROM rooms r
            WHERE r.status IN ('waiting', 'ready')
              AND r.created_at < $1
              AND NOT EXISTS (SELECT 1 FROM room_players p WHERE p.room_id = r.id)
            """,
            created_before,
        )
    return [row["id"] for row in rows]
