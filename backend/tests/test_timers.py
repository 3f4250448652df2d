from __future__ import annotations

import asyncio

import pytest

from quiz_arena.timers import TimerKey, TimerRegistry


@pytest.mark.asyncio
async def test_scheduled_callback_receives_its_key() -> None:
    registry = TimerRegistry()
    fired: list[TimerKey] = []

    async def callback(key: TimerKey) -> None:
        fired.append(key)

    key = TimerKey("room-1", "grace")
    registry.schedule(key, 0.01, callback)
    assert key in registry
    await asyncio.sleep(0.05)

    assert fired == [key]
    assert key not in registry


@pytest.mark.asyncio
async def test_rescheduling_a_key_replaces_the_pending_timer() -> None:
    registry = TimerRegistry()
    fired: list[str] = []

    async def first(key: TimerKey) -> None:
        fired.append("first")

    async def second(key: TimerKey) -> None:
        fired.append("second")

    key = TimerKey("room-1", "countdown", 3)
    registry.schedule(key, 0.02, first)
    registry.schedule(key, 0.02, second)
    await asyncio.sleep(0.06)

    assert fired == ["second"]


@pytest.mark.asyncio
async def test_cancel_where_and_cancel_all() -> None:
    registry = TimerRegistry()
    fired: list[str] = []

    async def callback(key: TimerKey) -> None:
        fired.append(key.name)

    registry.schedule(TimerKey("r", "bot:a", 1), 0.02, callback)
    registry.schedule(TimerKey("r", "bot:b", 1), 0.02, callback)
    registry.schedule(TimerKey("r", "clock", 1), 0.02, callback)
    registry.cancel_where(lambda key: key.name.startswith("bot:"))
    await asyncio.sleep(0.06)
    assert fired == ["clock"]

    registry.schedule(TimerKey("r", "reveal", 1), 0.02, callback)
    registry.cancel_all()
    await asyncio.sleep(0.05)
    assert fired == ["clock"]
    assert registry.active_keys == []


@pytest.mark.asyncio
async def test_callback_can_reschedule_its_own_key() -> None:
    registry = TimerRegistry()
    ticks: list[int] = []

    async def tick(key: TimerKey) -> None:
        ticks.append(key.ordinal)
        if len(ticks) < 3:
            registry.schedule(key, 0.005, tick)

    registry.schedule(TimerKey("r", "clock", 1), 0.005, tick)
    await asyncio.sleep(0.1)

    assert ticks == [1, 1, 1]


@pytest.mark.asyncio
async def test_failing_callback_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    registry = TimerRegistry()

    async def boom(key: TimerKey) -> None:
        raise RuntimeError("boom")

    registry.schedule(TimerKey("r", "boom"), 0.0, boom)
    await asyncio.sleep(0.02)

    assert "timer callback failed" in caplog.text
