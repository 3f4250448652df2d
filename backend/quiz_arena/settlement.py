from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .errors import SettlementError
from .round_engine import RoundResult
from .runtime_constants import STAKED_MODES
from .runtime_types import GameMode, GameResultKind, HistoryRecord
from .store import RoomStore

logger = logging.getLogger(__name__)


def resolve_outcome(result: RoundResult, user_id: str) -> GameResultKind:
    participant = result.participant(user_id)
    if participant is None or participant.has_surrendered:
        return "surrender"
    return "win" if result.winner_id == user_id else "loss"


def earnings_for(outcome: GameResultKind, mode: GameMode, bank: int) -> int:
    if outcome == "win" and mode in STAKED_MODES:
        return bank
    return 0


@dataclass(frozen=True)
class SettlementReceipt:
    user_id: str
    outcome: GameResultKind
    earnings: int
    balance: int | None
    record: HistoryRecord

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "outcome": self.outcome,
            "earnings": self.earnings,
            "balance": self.balance,
            "history": self.record.to_dict(),
        }


class Settlement:
    """Balance, stats and history updates for one participant leaving a round.

    The three writes are not atomic. A failure part-way raises
    SettlementError naming the steps that already went through, and a
    later call for the same (room, user) pair resumes after them. A pair
    that finished all three steps is refused.
    """

    def __init__(self, store: RoomStore) -> None:
        self.store = store
        self._settled: set[tuple[str, str]] = set()
        self._in_flight: set[tuple[str, str]] = set()
        # step name -> value it produced, for pairs that failed part-way
        self._progress: dict[tuple[str, str], dict[str, Any]] = {}

    async def settle(
        self,
        *,
        room_id: str,
        user_id: str,
        mode: GameMode,
        stake: int,
        roster_size: int,
        correct: int,
        wrong: int,
        outcome: GameResultKind,
    ) -> SettlementReceipt:
        key = (room_id, user_id)
        if key in self._settled:
            raise SettlementError(user_id, [], f"room {room_id} is already settled")
        if key in self._in_flight:
            raise SettlementError(user_id, [], f"room {room_id} is being settled")
        self._in_flight.add(key)

        bank = stake * roster_size
        earnings = earnings_for(outcome, mode, bank)
        done = self._progress.setdefault(key, {})
        if done:
            logger.info("settlement resuming room=%s user=%s completed=%s", room_id, user_id, list(done))
        try:
            if mode != "bot" and earnings and "balance" not in done:
                done["balance"] = await self.store.add_balance(user_id, earnings)
            if "stats" not in done:
                await self.store.record_game_played(user_id, won=outcome == "win")
                done["stats"] = None
            record = await self.store.append_history(
                HistoryRecord(
                    user_id=user_id,
                    room_id=room_id,
                    mode=mode,
                    result=outcome,
                    correct_answers=correct,
                    wrong_answers=wrong,
                    total_players=roster_size,
                    bet_amount=stake,
                    earnings=earnings - stake,
                )
            )
        except Exception as exc:
            logger.exception(
                "settlement failed room=%s user=%s completed=%s",
                room_id,
                user_id,
                list(done),
            )
            raise SettlementError(user_id, list(done), str(exc) or exc.__class__.__name__) from exc
        finally:
            self._in_flight.discard(key)

        self._settled.add(key)
        del self._progress[key]
        logger.info(
            "settlement done room=%s user=%s outcome=%s earnings=%s bank=%s",
            room_id,
            user_id,
            outcome,
            earnings,
            bank,
        )
        return SettlementReceipt(
            user_id=user_id,
            outcome=outcome,
            earnings=earnings,
            balance=done.get("balance"),
            record=record,
        )

    async def settle_round(self, result: RoundResult, user_id: str) -> SettlementReceipt:
        participant = result.participant(user_id)
        if participant is None:
            raise SettlementError(user_id, [], f"not seated in round {result.round_id}")
        return await self.settle(
            room_id=result.room_id,
            user_id=user_id,
            mode=result.mode,
            stake=result.stake,
            roster_size=result.roster_size,
            correct=participant.correct_answers,
            wrong=participant.wrong_answers,
            outcome=resolve_outcome(result, user_id),
        )
