from __future__ import annotations

from typing import Any

import pytest

from conftest import make_questions, wait_until
from quiz_arena.change_feed import LocalChangeFeed
from quiz_arena.errors import NotRoomHost, RoomStartConflict
from quiz_arena.room_lifecycle import RoomLifecycle
from quiz_arena.runtime_types import Question, Room
from quiz_arena.store import InMemoryRoomStore


class Harness:
    def __init__(self, store: InMemoryRoomStore, feed: LocalChangeFeed, **timing: Any) -> None:
        self.store = store
        self.feed = feed
        self.timing = {
            "min_players": 2,
            "total_questions": 3,
            "time_unit": 0.01,
            "ready_grace_units": 1,
            "countdown_units": 3,
            "force_start_units": 1,
            "poll_interval": 0.05,
            **timing,
        }
        self.source_calls: list[str] = []
        self.playing: dict[str, list[Room]] = {}
        self.events: dict[str, list[dict[str, Any]]] = {}
        self.lifecycles: list[RoomLifecycle] = []

    async def question_source(self, count: int) -> list[Question]:
        self.source_calls.append("call")
        return make_questions(count)

    async def open(self, room_id: str, user_id: str) -> RoomLifecycle:
        self.playing[user_id] = []
        self.events[user_id] = []

        async def on_playing(room: Room) -> None:
            self.playing[user_id].append(room)

        lifecycle = RoomLifecycle(
            self.store,
            self.feed,
            room_id,
            user_id,
            question_source=self.question_source,
            on_event=self.events[user_id].append,
            on_playing=on_playing,
            **self.timing,
        )
        self.lifecycles.append(lifecycle)
        await lifecycle.start()
        return lifecycle

    async def close(self) -> None:
        for lifecycle in self.lifecycles:
            await lifecycle.stop()


async def _room(store: InMemoryRoomStore, *members: str) -> str:
    room = await store.create_room(members[0], "friends", 5)
    for user_id in members:
        await store.upsert_member(room.id, user_id)
    return room.id


@pytest.mark.asyncio
async def test_room_starts_once_when_minimum_is_reached(store: InMemoryRoomStore, feed: LocalChangeFeed) -> None:
    harness = Harness(store, feed)
    room_id = await _room(store, "host")
    host = await harness.open(room_id, "host")
    assert host.state == "waiting"

    await store.upsert_member(room_id, "guest")
    guest = await harness.open(room_id, "guest")
    try:
        await wait_until(lambda: host.state == "playing" and guest.state == "playing")

        room = await store.get_room(room_id)
        assert room.status == "playing"
        assert room.questions is not None and len(room.questions) == 3
        assert harness.source_calls == ["call"]
        assert len(harness.playing["host"]) == 1
        assert len(harness.playing["guest"]) == 1

        host_states = [event["to"] for event in harness.events["host"] if event["type"] == "transition"]
        assert host_states == ["ready", "counting_down", "starting", "playing"]
        countdown = [event["remaining"] for event in harness.events["host"] if event["type"] == "countdown"]
        assert countdown == [2, 1]
    finally:
        await harness.close()


@pytest.mark.asyncio
async def test_ready_status_is_written_by_host_only(store: InMemoryRoomStore, feed: LocalChangeFeed) -> None:
    harness = Harness(store, feed, ready_grace_units=100)
    room_id = await _room(store, "host", "guest")
    guest = await harness.open(room_id, "guest")
    try:
        assert guest.state == "ready"
        assert (await store.get_room(room_id)).status == "waiting"

        host = await harness.open(room_id, "host")
        assert host.state == "ready"
        assert (await store.get_room(room_id)).status == "ready"
    finally:
        await harness.close()


@pytest.mark.asyncio
async def test_dropping_below_minimum_cancels_countdown(store: InMemoryRoomStore, feed: LocalChangeFeed) -> None:
    harness = Harness(store, feed, countdown_units=200)
    room_id = await _room(store, "host", "guest")
    host = await harness.open(room_id, "host")
    try:
        await wait_until(lambda: host.state == "counting_down")

        await store.remove_member(room_id, "guest")
        await wait_until(lambda: host.state == "waiting")

        assert host.countdown_remaining is None
        assert (await store.get_room(room_id)).status == "waiting"
        assert harness.source_calls == []
        assert host.timers.active_keys == []
    finally:
        await harness.close()


@pytest.mark.asyncio
async def test_force_start_shortens_the_countdown(store: InMemoryRoomStore, feed: LocalChangeFeed) -> None:
    harness = Harness(store, feed, ready_grace_units=500, countdown_units=500)
    room_id = await _room(store, "host", "guest")
    host = await harness.open(room_id, "host")
    guest = await harness.open(room_id, "guest")
    try:
        assert host.state == "ready"
        with pytest.raises(NotRoomHost):
            await guest.force_start()

        await host.force_start()
        assert host.state == "counting_down"
        assert host.countdown_remaining == 1

        await wait_until(lambda: host.state == "playing" and guest.state == "playing")
        assert harness.source_calls == ["call"]
    finally:
        await harness.close()


@pytest.mark.asyncio
async def test_force_start_needs_enough_players(store: InMemoryRoomStore, feed: LocalChangeFeed) -> None:
    harness = Harness(store, feed)
    room_id = await _room(store, "host")
    host = await harness.open(room_id, "host")
    try:
        with pytest.raises(RoomStartConflict):
            await host.force_start()
    finally:
        await harness.close()


@pytest.mark.asyncio
async def test_failed_claim_stays_in_starting_until_retry(store: InMemoryRoomStore, feed: LocalChangeFeed) -> None:
    harness = Harness(store, feed)
    store.fail_writes.add("claim_room_start")
    room_id = await _room(store, "host", "guest")
    host = await harness.open(room_id, "host")
    guest = await harness.open(room_id, "guest")
    try:
        await wait_until(lambda: host.last_error is not None)
        assert host.state == "starting"
        assert any(event["type"] == "start_failed" for event in harness.events["host"])
        await wait_until(lambda: guest.state == "starting")

        with pytest.raises(NotRoomHost):
            await guest.retry_start()
        with pytest.raises(RoomStartConflict):
            await host.retry_start()

        store.fail_writes.clear()
        await host.retry_start()

        assert host.state == "playing"
        assert host.last_error is None
        await wait_until(lambda: guest.state == "playing")
    finally:
        await harness.close()


@pytest.mark.asyncio
async def test_missing_room_finishes_lifecycle(store: InMemoryRoomStore, feed: LocalChangeFeed) -> None:
    harness = Harness(store, feed)
    lifecycle = await harness.open("does-not-exist", "host")
    try:
        assert lifecycle.state == "finished"
    finally:
        await harness.close()


@pytest.mark.asyncio
async def test_mark_finished_writes_finished_status(store: InMemoryRoomStore, feed: LocalChangeFeed) -> None:
    harness = Harness(store, feed)
    room_id = await _room(store, "host", "guest")
    host = await harness.open(room_id, "host")
    guest = await harness.open(room_id, "guest")
    try:
        await wait_until(lambda: host.state == "playing" and guest.state == "playing")

        await guest.mark_finished()
        assert (await store.get_room(room_id)).status == "playing"

        await host.mark_finished()
        assert (await store.get_room(room_id)).status == "finished"
        assert host.state == "finished"
    finally:
        await harness.close()
