from __future__ import annotations

import random

import pytest

from quiz_arena import question_generation
from quiz_arena.config import AIQuestionProviderConfig, settings
from quiz_arena.errors import QuestionBankError
from quiz_arena.question_generation import (
    QuestionGenerationError,
    QuestionGenerationUnavailable,
    _strip_json_fence,
    _validate_generated_questions,
    build_question_set,
    fallback_questions,
    generate_questions,
)
from quiz_arena.runtime_constants import FALLBACK_BANK, QUESTION_CATEGORIES


def _raw_question(text: str, correct_index: int = 1, category: str = "History") -> dict[str, object]:
    return {
        "text": text,
        "options": ["Paris", "Rome", "Berlin", "Madrid"],
        "correctIndex": correct_index,
        "category": category,
    }


def test_fallback_questions_are_numbered_and_well_formed() -> None:
    questions = fallback_questions(10, random.Random(4))

    assert [question.question_number for question in questions] == list(range(1, 11))
    assert len({question.id for question in questions}) == 10
    for question in questions:
        assert len(question.options) == 4
        assert 0 <= question.correct_index < 4
        assert question.category in QUESTION_CATEGORIES


def test_fallback_bank_refuses_oversized_sets() -> None:
    with pytest.raises(QuestionBankError):
        fallback_questions(len(FALLBACK_BANK) + 1)


def test_strip_json_fence() -> None:
    assert _strip_json_fence('```json\n{"questions": []}\n```') == '{"questions": []}'
    assert _strip_json_fence('Sure! {"a": 1} Bye') == '{"a": 1}'


def test_validate_generated_questions_keeps_correct_option_after_shuffle() -> None:
    payload = {"questions": [_raw_question(f"Capital {index}?") for index in range(3)]}

    questions = _validate_generated_questions(payload, count=2)

    assert len(questions) == 2
    for question in questions:
        assert question.options[question.correct_index] == "Rome"


def test_validate_generated_questions_replaces_unknown_category() -> None:
    payload = {"questions": [_raw_question("Q?", category="Astrology")]}

    [question] = _validate_generated_questions(payload, count=1)

    assert question.category == QUESTION_CATEGORIES[0]


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"questions": []},
        {"questions": [{"text": "Q?", "options": ["a", "b", "c"], "correctIndex": 0}]},
        {"questions": [{"text": "Q?", "options": ["a", "b", "c", "d"], "correctIndex": 4}]},
    ],
)
def test_validate_generated_questions_rejects_bad_payloads(payload: dict[str, object]) -> None:
    with pytest.raises(QuestionGenerationError):
        _validate_generated_questions(payload, count=1)


@pytest.mark.asyncio
async def test_generate_questions_without_providers_is_unavailable() -> None:
    with pytest.raises(QuestionGenerationUnavailable):
        await generate_questions(5, providers=[])


@pytest.mark.asyncio
async def test_generate_questions_tries_providers_in_order(monkeypatch: pytest.MonkeyPatch) -> None:
    first = AIQuestionProviderConfig(name="first", url="http://first", model="m", api_key="k")
    second = AIQuestionProviderConfig(name="second", url="http://second", model="m", api_key="k")
    calls: list[str] = []

    def fake_request(provider: AIQuestionProviderConfig, count: int):
        calls.append(provider.name)
        if provider.name == "first":
            raise QuestionGenerationError("timeout")
        return fallback_questions(count)

    monkeypatch.setattr(question_generation, "_request_generated_questions", fake_request)

    questions = await generate_questions(3, providers=[first, second])

    assert calls == ["first", "second"]
    assert len(questions) == 3


@pytest.mark.asyncio
async def test_build_question_set_falls_back_to_local_bank(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "ai_question_providers", ())

    questions = await build_question_set(7)

    assert len(questions) == 7
    assert [question.question_number for question in questions] == list(range(1, 8))
