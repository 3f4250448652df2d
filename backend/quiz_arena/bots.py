"""Simulated participants for bot-mode rounds.

Both helpers are stateless apart from the random source, so one call per bot
per question can run concurrently without coordination.
"""
from __future__ import annotations

import random
from dataclasses import dataclass

from .runtime_constants import (
    BOT_ACCURACY_JITTER,
    BOT_DELAY_MAX_UNITS,
    BOT_DELAY_MIN_UNITS,
    BOT_NAMES,
)
from .runtime_types import Participant
from .runtime_utils import avatar_url_for, base_accuracy_for


@dataclass(frozen=True)
class BotAnswer:
    correct: bool
    delay_units: float


def generate_bots(count: int, rng: random.Random | None = None) -> list[Participant]:
    source = rng or random
    count = max(0, min(int(count), len(BOT_NAMES)))
    names = source.sample(BOT_NAMES, count)
    return [
        Participant(
            id=f"bot-{index}",
            username=name,
            avatar_url=avatar_url_for(f"bot-{name}"),
            is_bot=True,
        )
        for index, name in enumerate(names, start=1)
    ]


def simulate_bot_answer(question_ordinal: int, rng: random.Random | None = None) -> BotAnswer:
    source = rng or random
    accuracy = base_accuracy_for(question_ordinal)
    accuracy += source.uniform(-BOT_ACCURACY_JITTER, BOT_ACCURACY_JITTER)
    correct = source.random() < accuracy
    delay_units = source.uniform(BOT_DELAY_MIN_UNITS, BOT_DELAY_MAX_UNITS)
    return BotAnswer(correct=correct, delay_units=delay_units)


def pick_bot_option(correct_index: int, correct: bool, rng: random.Random | None = None) -> int:
    if correct:
        return correct_index
    source = rng or random
    return source.choice([index for index in range(4) if index != correct_index])
