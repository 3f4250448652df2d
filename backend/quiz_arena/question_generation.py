from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from typing import Any
from urllib import error, request

from .config import AIQuestionProviderConfig, settings
from .errors import QuestionBankError
from .runtime_constants import FALLBACK_BANK, OPTIONS_PER_QUESTION, QUESTION_CATEGORIES
from .runtime_types import Question
from .runtime_utils import difficulty_tier_for, random_id

logger = logging.getLogger(__name__)


class QuestionGenerationError(RuntimeError):
    pass


class QuestionGenerationUnavailable(QuestionGenerationError):
    pass


def _strip_json_fence(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z0-9_-]*\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        return text[start : end + 1]
    return text


def _extract_message_content(payload: dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise QuestionGenerationError("Model response does not contain choices")
    message = choices[0].get("message")
    if not isinstance(message, dict):
        raise QuestionGenerationError("Model response does not contain message")
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(item.get("text") or "")
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        if parts:
            return "\n".join(parts)
    raise QuestionGenerationError("Model response does not contain text content")


def _shuffle_options(
    options: list[str],
    correct_index: int,
    rng: random.Random | None = None,
) -> tuple[list[str], int]:
    indexed = list(enumerate(options))
    (rng or random).shuffle(indexed)
    shuffled_options = [text for _, text in indexed]
    shuffled_correct_index = next(
        index for index, (source_index, _) in enumerate(indexed) if source_index == correct_index
    )
    return shuffled_options, shuffled_correct_index


def _build_question(
    ordinal: int,
    text: str,
    options: list[str],
    correct_index: int,
    category: str,
) -> Question:
    return Question(
        id=random_id(),
        text=text,
        options=(options[0], options[1], options[2], options[3]),
        correct_index=correct_index,
        category=category,
        question_number=ordinal,
    )


def _validate_generated_questions(payload: dict[str, Any], *, count: int) -> list[Question]:
    questions_raw = payload.get("questions")
    if not isinstance(questions_raw, list):
        raise QuestionGenerationError("Model JSON does not contain questions[]")
    if len(questions_raw) < count:
        raise QuestionGenerationError("Model returned fewer questions than requested")

    questions: list[Question] = []
    for ordinal, raw_question in enumerate(questions_raw[:count], start=1):
        if not isinstance(raw_question, dict):
            raise QuestionGenerationError("Question entry is not an object")

        text = str(raw_question.get("text") or "").strip()
        options_raw = raw_question.get("options")
        if not text or not isinstance(options_raw, list):
            raise QuestionGenerationError("Question is missing text/options")

        options = [str(option or "").strip()[:80] for option in options_raw]
        options = [option for option in options if option]
        if len(options) != OPTIONS_PER_QUESTION:
            raise QuestionGenerationError("Each generated question must contain exactly 4 answers")

        try:
            correct_index = int(raw_question.get("correctIndex"))
        except (TypeError, ValueError):
            raise QuestionGenerationError("Question is missing valid correctIndex") from None
        if correct_index < 0 or correct_index >= len(options):
            raise QuestionGenerationError("correctIndex is out of range")

        category = str(raw_question.get("category") or "").strip()[:40]
        if category not in QUESTION_CATEGORIES:
            category = QUESTION_CATEGORIES[(ordinal - 1) % len(QUESTION_CATEGORIES)]

        shuffled_options, shuffled_correct_index = _shuffle_options(options, correct_index)
        questions.append(
            _build_question(ordinal, text[:220], shuffled_options, shuffled_correct_index, category)
        )
    return questions


def _build_prompt(count: int) -> str:
    tiers = ", ".join(difficulty_tier_for(ordinal) for ordinal in range(1, count + 1))
    return (
        "Return valid JSON only. No markdown, no commentary.\n"
        f"Number of questions: {count}\n"
        f"Difficulty by position: {tiers}\n"
        f"Categories to mix: {', '.join(QUESTION_CATEGORIES)}\n"
        "Rules:\n"
        "- questions and answers are short and in English;\n"
        "- every question has exactly 4 answer options;\n"
        "- exactly 1 option is correct;\n"
        "- difficulty rises with the position of the question;\n"
        '- JSON format: {"questions":[{"text":"...","options":["...","...","...","..."],'
        '"correctIndex":0,"category":"..."}]}\n'
    )


def _request_generated_questions(provider: AIQuestionProviderConfig, count: int) -> list[Question]:
    body = {
        "model": provider.model,
        "temperature": settings.ai_question_temperature,
        "max_tokens": max(500, count * 160),
        "messages": [
            {
                "role": "system",
                "content": "You write short general-knowledge trivia questions and answer with JSON only.",
            },
            {"role": "user", "content": _build_prompt(count)},
        ],
    }
    if "openrouter.ai" in provider.url.lower():
        body["response_format"] = {"type": "json_object"}

    raw_request = request.Request(
        provider.url,
        data=json.dumps(body).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {provider.api_key}",
            "Accept": "application/json",
        },
        method="POST",
    )
    try:
        with request.urlopen(raw_request, timeout=settings.ai_question_timeout_seconds) as response:
            response_payload = json.loads(response.read().decode("utf-8"))
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore")
        raise QuestionGenerationError(f"HTTP {exc.code}: {detail[:300]}") from exc
    except Exception as exc:
        raise QuestionGenerationError(str(exc)) from exc

    if isinstance(response_payload, dict) and "error" in response_payload:
        raise QuestionGenerationError(
            f"Provider returned error: {str(response_payload['error'])[:300]}"
        )

    content = _extract_message_content(response_payload)
    try:
        generated_payload = json.loads(_strip_json_fence(content))
    except Exception as exc:
        raise QuestionGenerationError(
            f"Failed to parse JSON. content_head={content[:200]!r}"
        ) from exc
    if not isinstance(generated_payload, dict):
        raise QuestionGenerationError("Model JSON root is not an object")

    return _validate_generated_questions(generated_payload, count=count)


async def generate_questions(
    count: int,
    providers: list[AIQuestionProviderConfig] | None = None,
) -> list[Question]:
    providers = list(settings.ai_question_providers if providers is None else providers)
    if not providers:
        raise QuestionGenerationUnavailable("No question provider is configured")

    last_error = "Unknown question generation error"
    for index, provider in enumerate(providers, start=1):
        try:
            logger.info(
                "question_generation attempt=%s provider=%s model=%s count=%s",
                index,
                provider.name,
                provider.model,
                count,
            )
            return await asyncio.to_thread(_request_generated_questions, provider, count)
        except QuestionGenerationError as exc:
            last_error = str(exc)
            logger.warning(
                "question_generation failed attempt=%s provider=%s model=%s reason=%s",
                index,
                provider.name,
                provider.model,
                last_error,
            )

    raise QuestionGenerationUnavailable(f"Question providers did not answer: {last_error}")


def fallback_questions(count: int, rng: random.Random | None = None) -> list[Question]:
    """Draw ``count`` questions from the local bank, shuffled, renumbered 1..count."""
    if count > len(FALLBACK_BANK):
        raise QuestionBankError(
            f"Fallback bank holds {len(FALLBACK_BANK)} questions, {count} required"
        )
    source = rng or random
    entries = source.sample(FALLBACK_BANK, count)
    return [
        _build_question(
            ordinal,
            entry["text"],
            list(entry["options"]),
            int(entry["correctIndex"]),
            entry["category"],
        )
        for ordinal, entry in enumerate(entries, start=1)
    ]


async def build_question_set(count: int | None = None) -> list[Question]:
    """Generate a full question set, falling back to the local bank on any provider failure."""
    count = settings.total_questions if count is None else count
    try:
        return await generate_questions(count)
    except QuestionGenerationUnavailable as exc:
        logger.warning("question_generation fallback count=%s reason=%s", count, exc)
    return fallback_questions(count)
