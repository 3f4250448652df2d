from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from typing import Callable

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from quiz_arena.change_feed import LocalChangeFeed  # noqa: E402
from quiz_arena.runtime_types import Participant, Question  # noqa: E402
from quiz_arena.store import InMemoryRoomStore  # noqa: E402


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.005) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition was not met in time")
        await asyncio.sleep(interval)


def make_questions(count: int, correct_index: int = 0) -> list[Question]:
    return [
        Question(
            id=f"q{ordinal}",
            text=f"Question {ordinal}?",
            options=("A", "B", "C", "D"),
            correct_index=correct_index,
            category="Science",
            question_number=ordinal,
        )
        for ordinal in range(1, count + 1)
    ]


def make_participant(participant_id: str, **overrides) -> Participant:
    return Participant(id=participant_id, username=participant_id.title(), avatar_url="", **overrides)


@pytest.fixture
def feed() -> LocalChangeFeed:
    return LocalChangeFeed()


@pytest.fixture
def store(feed: LocalChangeFeed) -> InMemoryRoomStore:
    return InMemoryRoomStore(feed)
