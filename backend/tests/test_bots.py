from __future__ import annotations

import random

from quiz_arena.bots import generate_bots, pick_bot_option, simulate_bot_answer
from quiz_arena.runtime_constants import BOT_NAMES


def test_generate_bots_uses_distinct_names_and_ids() -> None:
    bots = generate_bots(6, random.Random(3))

    assert len(bots) == 6
    assert [bot.id for bot in bots] == [f"bot-{index}" for index in range(1, 7)]
    assert len({bot.username for bot in bots}) == 6
    assert all(bot.is_bot and bot.username in BOT_NAMES for bot in bots)


def test_generate_bots_caps_at_name_pool() -> None:
    assert len(generate_bots(len(BOT_NAMES) + 5, random.Random(1))) == len(BOT_NAMES)
    assert generate_bots(0) == []


def test_bot_delay_stays_inside_window() -> None:
    rng = random.Random(7)
    for ordinal in (1, 10, 20, 30):
        for _ in range(200):
            plan = simulate_bot_answer(ordinal, rng)
            assert 1.0 <= plan.delay_units <= 7.0


def test_bot_accuracy_follows_difficulty_tier() -> None:
    rng = random.Random(11)
    samples = 4000

    easy = sum(simulate_bot_answer(1, rng).correct for _ in range(samples)) / samples
    expert = sum(simulate_bot_answer(30, rng).correct for _ in range(samples)) / samples

    assert 0.85 <= easy <= 0.95
    assert 0.25 <= expert <= 0.35


def test_pick_bot_option() -> None:
    rng = random.Random(5)
    assert pick_bot_option(2, True, rng) == 2
    wrong = {pick_bot_option(2, False, rng) for _ in range(100)}
    assert wrong == {0, 1, 3}
