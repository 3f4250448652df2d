from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import make_questions, wait_until
from quiz_arena.change_feed import ChangeNotification, LocalChangeFeed
from quiz_arena.models import schema_statements
from quiz_arena.runtime_state_sync import StateSync
from quiz_arena.runtime_types import AnswerRecord
from quiz_arena.runtime_utils import utc_now
from quiz_arena.store import PLAYER_ANSWERS, ROOMS, InMemoryRoomStore


@pytest.mark.asyncio
async def test_start_claim_succeeds_once(store: InMemoryRoomStore) -> None:
    room = await store.create_room("host", "random", 10)

    assert await store.claim_room_start(room.id, "guest", make_questions(2)) is False
    assert await store.claim_room_start(room.id, "host", make_questions(2)) is True
    assert await store.claim_room_start(room.id, "host", make_questions(3)) is False

    stored = await store.get_room(room.id)
    assert stored.status == "playing"
    assert len(stored.questions) == 2
    assert stored.started_at is not None


@pytest.mark.asyncio
async def test_first_answer_per_question_wins(store: InMemoryRoomStore) -> None:
    first = AnswerRecord("room", "alice", 0, 1, True)
    second = AnswerRecord("room", "alice", 0, 2, False)

    assert await store.record_answer(first) is True
    assert await store.record_answer(second) is False
    await store.record_answer(AnswerRecord("room", "alice", 1, None, False))

    line = (await store.answer_stats("room"))["alice"]
    assert (line.correct, line.wrong) == (1, 1)


@pytest.mark.asyncio
async def test_conditional_status_update(store: InMemoryRoomStore) -> None:
    room = await store.create_room("host", "random", 10)

    assert await store.set_room_status(room.id, "ready", expected=("waiting",)) is True
    assert await store.set_room_status(room.id, "waiting", expected=("playing",)) is False
    assert (await store.get_room(room.id)).status == "ready"


@pytest.mark.asyncio
async def test_deduct_balance_never_goes_negative(store: InMemoryRoomStore) -> None:
    await store.create_profile("alice", "Alice", balance=15)

    assert await store.deduct_balance("alice", 10) == 5
    assert await store.deduct_balance("alice", 10) is None
    assert (await store.get_profile("alice")).balance == 5


@pytest.mark.asyncio
async def test_capped_seat_needs_an_open_room_with_a_free_seat(store: InMemoryRoomStore) -> None:
    room = await store.create_room("a", "random", 10)

    assert await store.upsert_member(room.id, "a", max_players=2) is True
    assert await store.upsert_member(room.id, "b", max_players=2) is True
    assert await store.upsert_member(room.id, "c", max_players=2) is False
    assert await store.upsert_member("missing", "c", max_players=2) is False

    other = await store.create_room("d", "random", 10)
    await store.claim_room_start(other.id, "d", make_questions(1))
    assert await store.upsert_member(other.id, "e", max_players=4) is False
    assert [member.user_id for member in await store.list_members(room.id)] == ["a", "b"]


@pytest.mark.asyncio
async def test_seated_room_lookup_ignores_started_rooms_and_other_modes(store: InMemoryRoomStore) -> None:
    friends = await store.create_room("alice", "friends", 5)
    await store.upsert_member(friends.id, "alice")
    started = await store.create_room("alice", "random", 10)
    await store.upsert_member(started.id, "alice")
    await store.set_room_status(started.id, "playing")

    assert await store.find_seated_room("alice", "random") is None
    assert (await store.find_seated_room("alice", "friends")).id == friends.id
    assert await store.find_seated_room("bob", "friends") is None


@pytest.mark.asyncio
async def test_abandoned_rooms_are_open_and_empty(store: InMemoryRoomStore) -> None:
    empty = await store.create_room("a", "random", 10)
    seated = await store.create_room("b", "random", 10)
    await store.upsert_member(seated.id, "b")
    started = await store.create_room("c", "random", 10)
    await store.set_room_status(started.id, "playing")

    assert await store.list_abandoned_rooms(utc_now() + timedelta(seconds=1)) == [empty.id]
    assert await store.list_abandoned_rooms(utc_now() - timedelta(hours=1)) == []


@pytest.mark.asyncio
async def test_local_feed_routes_by_table_and_key() -> None:
    feed = LocalChangeFeed()
    subscription = await feed.subscribe([(ROOMS, "r1")])

    await feed.publish(ChangeNotification(ROOMS, "r2", "update"))
    await feed.publish(ChangeNotification(ROOMS, "r1", "update"))

    received = await subscription.get(timeout=0.1)
    assert received == ChangeNotification(ROOMS, "r1", "update")
    assert await subscription.get(timeout=0.01) is None
    await subscription.close()


@pytest.mark.asyncio
async def test_state_sync_refreshes_on_notification_and_poll(store: InMemoryRoomStore, feed: LocalChangeFeed) -> None:
    calls: list[int] = []

    async def refresh() -> None:
        calls.append(len(calls))

    sync = StateSync(feed, [(PLAYER_ANSWERS, "room")], refresh, poll_interval=0.5, name="test")
    await sync.start()
    try:
        await store.record_answer(AnswerRecord("room", "alice", 0, 1, True))
        await wait_until(lambda: len(calls) >= 1, timeout=0.4)
    finally:
        await sync.stop()

    assert not sync.running
    count = len(calls)
    await asyncio.sleep(0.05)
    assert len(calls) == count


def test_schema_statements_create_every_table_idempotently() -> None:
    statements = schema_statements()
    tables = [statement for statement in statements if statement.lstrip().startswith("CREATE TABLE")]

    assert len(tables) == 6
    assert all("IF NOT EXISTS" in statement for statement in statements)
    assert any("player_answers" in statement and "UNIQUE" in statement for statement in tables)
