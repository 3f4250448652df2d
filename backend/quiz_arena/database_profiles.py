from __future__ import annotations

from typing import Any

import asyncpg

from .runtime_constants import GAMES_PER_LEVEL
from .runtime_types import HistoryRecord, Profile
from .runtime_utils import random_id

_PROFILE_COLUMNS = "id, username, avatar_url, balance, total_wins, total_games, level, player_code"


def _profile_from_row(row: Any) -> Profile:
    return Profile(
        id=row["id"],
        username=row["username"],
        avatar_url=row["avatar_url"],
        balance=int(row["balance"]),
        total_wins=int(row["total_wins"]),
        total_games=int(row["total_games"]),
        level=int(row["level"]),
        player_code=row["player_code"],
    )


def _history_from_row(row: Any) -> HistoryRecord:
    return HistoryRecord(
        id=row["id"],
        user_id=row["user_id"],
        room_id=row["room_id"],
        mode=row["mode"],
        result=row["result"],
        correct_answers=int(row["correct_answers"]),
        wrong_answers=int(row["wrong_answers"]),
        total_players=int(row["total_players"]),
        bet_amount=int(row["bet_amount"]),
        earnings=int(row["earnings"]),
        played_at=row["played_at"],
    )


async def get_profile(pool: asyncpg.Pool, user_id: str) -> Profile | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE id = $1",
            user_id,
        )
    return _profile_from_row(row) if row else None


async def create_profile(
    pool: asyncpg.Pool,
    *,
    user_id: str,
    username: str,
    avatar_url: str,
    balance: int,
    player_code: str,
) -> Profile:
    async with pool.acquire() as conn:
        await conn.execute(
            """
            INSERT INTO profiles (id, username, avatar_url, balance, player_code)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO NOTHING
            """,
            user_id,
            username,
            avatar_url,
            int(balance),
            player_code,
        )
        row = await conn.fetchrow(
            f"SELECT {_PROFILE_COLUMNS} FROM profiles WHERE id = $1",
            user_id,
        )
    return _profile_from_row(row)


async def deduct_balance(pool: asyncpg.Pool, user_id: str, amount: int) -> int | None:
    async with pool.acquire() as conn:
        value = await conn.fetchval(
            """
            UPDATE profiles
            SET balance = balance - $2
            WHERE id = $1 AND balance >= $2
            RETURNING balance
            """,
            user_id,
            int(amount),
        )
    return int(value) if value is not None else None


async def add_balance(pool: asyncpg.Pool, user_id: str, amount: int) -> int | None:
    async with pool.acquire() as conn:
        value = await conn.fetchval(
            "UPDATE profiles SET balance = balance + $2 WHERE id = $1 RETURNING balance",
            user_id,
            int(amount),
        )
    return int(value) if value is not None else None


async def record_game_played(pool: asyncpg.Pool, user_id: str, *, won: bool) -> Profile | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"""
            UPDATE profiles
            SET total_games = total_games + 1,
                total_wins = total_wins + CASE WHEN $2 THEN 1 ELSE 0 END,
                level = (total_games + 1) / $3 + 1
            WHERE id = $1
            RETURNING {_PROFILE_COLUMNS}
            """,
            user_id,
            bool(won),
            GAMES_PER_LEVEL,
        )
    return _profile_from_row(row) if row else None


async def append_history(pool: asyncpg.Pool, record: HistoryRecord) -> HistoryRecord:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO game_history
              (id, user_id, room_id, mode, result, correct_answers, wrong_answers,
               total_players, bet_amount, earnings)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            RETURNING *
            """,
            random_id(),
            record.user_id,
            record.room_id,
            record.mode,
            record.result,
            int(record.correct_answers),
            int(record.wrong_answers),
            int(record.total_players),
            int(record.bet_amount),
            int(record.earnings),
        )
    return _history_from_row(row)


async def list_history(pool: asyncpg.Pool, user_id: str, *, limit: int) -> list[HistoryRecord]:
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT * FROM game_history
            WHERE user_id = $1
            ORDER BY played_at DESC
            LIMIT $2
            """,
            user_id,
            int(limit),
        )
    return [_history_from_row(row) for row in rows]
