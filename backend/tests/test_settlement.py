from __future__ import annotations

import pytest

from conftest import make_participant
from quiz_arena.errors import SettlementError
from quiz_arena.round_engine import RoundResult, rank_participants
from quiz_arena.settlement import Settlement, earnings_for, resolve_outcome
from quiz_arena.store import InMemoryRoomStore


def _result(mode: str = "random", stake: int = 10, completed: bool = True) -> RoundResult:
    participants = [
        make_participant("alice", correct_answers=8, wrong_answers=2),
        make_participant("bob", correct_answers=5, wrong_answers=5),
        make_participant("carol", correct_answers=1, wrong_answers=0, has_surrendered=True),
    ]
    return RoundResult(
        round_id="room-1",
        room_id="room-1",
        mode=mode,  # type: ignore[arg-type]
        stake=stake,
        roster_size=len(participants),
        participants=participants,
        ranking=rank_participants(participants),
        completed=completed,
    )


async def _profiles(store: InMemoryRoomStore) -> None:
    for user_id in ("alice", "bob", "carol"):
        await store.create_profile(user_id, user_id, balance=90)


def test_outcomes() -> None:
    result = _result()
    assert resolve_outcome(result, "alice") == "win"
    assert resolve_outcome(result, "bob") == "loss"
    assert resolve_outcome(result, "carol") == "surrender"
    assert resolve_outcome(_result(completed=False), "alice") == "loss"


def test_earnings_only_for_staked_wins() -> None:
    assert earnings_for("win", "random", 30) == 30
    assert earnings_for("win", "friends", 15) == 15
    assert earnings_for("win", "bot", 30) == 0
    assert earnings_for("loss", "random", 30) == 0
    assert earnings_for("surrender", "random", 30) == 0


@pytest.mark.asyncio
async def test_winner_collects_the_whole_bank(store: InMemoryRoomStore) -> None:
    await _profiles(store)
    settlement = Settlement(store)

    receipt = await settlement.settle_round(_result(), "alice")

    assert receipt.outcome == "win"
    assert receipt.earnings == 30
    assert receipt.balance == 120
    profile = await store.get_profile("alice")
    assert (profile.total_games, profile.total_wins) == (1, 1)
    assert receipt.record.earnings == 20
    assert receipt.record.total_players == 3
    assert receipt.record.correct_answers == 8


@pytest.mark.asyncio
async def test_loser_and_surrender_record_the_lost_stake(store: InMemoryRoomStore) -> None:
    await _profiles(store)
    settlement = Settlement(store)

    loss = await settlement.settle_round(_result(), "bob")
    surrender = await settlement.settle_round(_result(), "carol")

    assert (loss.outcome, loss.earnings, loss.record.earnings) == ("loss", 0, -10)
    assert (surrender.outcome, surrender.record.earnings) == ("surrender", -10)
    assert (await store.get_profile("bob")).balance == 90
    assert (await store.get_profile("carol")).total_wins == 0
    assert [record.result for record in await store.list_history("carol")] == ["surrender"]


@pytest.mark.asyncio
async def test_bot_mode_never_touches_balance(store: InMemoryRoomStore) -> None:
    await _profiles(store)
    store.fail_writes.add("add_balance")

    receipt = await Settlement(store).settle_round(_result(mode="bot", stake=0), "alice")

    assert receipt.outcome == "win"
    assert receipt.earnings == 0
    assert receipt.balance is None
    assert (await store.get_profile("alice")).total_wins == 1


@pytest.mark.asyncio
async def test_failure_reports_completed_steps(store: InMemoryRoomStore) -> None:
    await _profiles(store)
    store.fail_writes.add("append_history")

    with pytest.raises(SettlementError) as excinfo:
        await Settlement(store).settle_round(_result(), "alice")

    assert excinfo.value.completed_steps == ["balance", "stats"]
    assert (await store.get_profile("alice")).balance == 120
    assert store.history == []


@pytest.mark.asyncio
async def test_settling_twice_is_refused(store: InMemoryRoomStore) -> None:
    await _profiles(store)
    settlement = Settlement(store)
    await settlement.settle_round(_result(), "alice")

    with pytest.raises(SettlementError):
        await settlement.settle_round(_result(), "alice")

    assert (await store.get_profile("alice")).balance == 120
    assert len(await store.list_history("alice")) == 1


@pytest.mark.asyncio
async def test_unseated_user_cannot_settle(store: InMemoryRoomStore) -> None:
    with pytest.raises(SettlementError):
        await Settlement(store).settle_round(_result(), "mallory")


@pytest.mark.asyncio
async def test_retry_after_partial_failure_resumes_where_it_stopped(store: InMemoryRoomStore) -> None:
    await _profiles(store)
    settlement = Settlement(store)
    store.fail_writes.add("append_history")
    with pytest.raises(SettlementError):
        await settlement.settle_round(_result(), "alice")

    store.fail_writes.clear()
    receipt = await settlement.settle_round(_result(), "alice")

    assert receipt.balance == 120
    profile = await store.get_profile("alice")
    assert (profile.balance, profile.total_games, profile.total_wins) == (120, 1, 1)
    assert len(await store.list_history("alice")) == 1
    with pytest.raises(SettlementError):
        await settlement.settle_round(_result(), "alice")
