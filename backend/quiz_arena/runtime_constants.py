from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .config import settings
from .runtime_types import DifficultyTier, GameMode

MIN_PLAYERS = settings.min_players
MAX_PLAYERS = settings.max_players
TOTAL_QUESTIONS = settings.total_questions
OPTIONS_PER_QUESTION = 4
GAME_MODES: tuple[GameMode, GameMode, GameMode] = ("bot", "random", "friends")
STAKED_MODES: frozenset[str] = frozenset({"random", "friends"})
GAMES_PER_LEVEL = 5
PLAYER_CODE_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
AVATAR_URL_TEMPLATE = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"

# (highest ordinal in tier, tier label, base bot accuracy)
DIFFICULTY_TIERS: tuple[tuple[int, DifficultyTier, float], ...] = (
    (5, "easy", 0.9),
    (15, "medium", 0.7),
    (25, "hard", 0.5),
)
EXPERT_TIER: tuple[DifficultyTier, float] = ("expert", 0.3)
BOT_ACCURACY_JITTER = 0.1
BOT_DELAY_MIN_UNITS = 1.0
BOT_DELAY_MAX_UNITS = 7.0

BOT_NAMES = [
    "Alex",
    "Maria",
    "Ivan",
    "Elena",
    "Dmitry",
    "Anna",
    "Sergey",
    "Olga",
    "Nikolai",
    "Tatiana",
    "Pavel",
    "Julia",
]

QUESTION_CATEGORIES = (
    "History",
    "Geography",
    "Science",
    "Art",
    "Sport",
    "Cinema",
    "Music",
    "Literature",
    "Technology",
    "Nature",
)

FALLBACK_QUESTIONS_PATH = Path(__file__).resolve().parent / "data" / "fallback_questions.json"


def _sanitize_bank_entry(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None

    text = str(raw.get("text") or "").strip()
    options_raw = raw.get("options")
    if not text or not isinstance(options_raw, list):
        return None

    options = [str(option).strip() for option in options_raw if str(option).strip()]
    if len(options) != OPTIONS_PER_QUESTION:
        return None

    try:
        correct_index = int(raw.get("correctIndex"))
    except (TypeError, ValueError):
        return None

    if correct_index < 0 or correct_index >= OPTIONS_PER_QUESTION:
        return None

    return {
        "text": text[:300],
        "options": options,
        "correctIndex": correct_index,
        "category": str(raw.get("category") or "").strip()[:40] or QUESTION_CATEGORIES[0],
    }


def load_fallback_bank(path: Path = FALLBACK_QUESTIONS_PATH) -> list[dict[str, Any]]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    entries_raw = payload.get("questions") if isinstance(payload, dict) else None
    if not isinstance(entries_raw, list):
        raise RuntimeError(f"{path.name} must contain a 'questions' array")
    return [entry for entry in (_sanitize_bank_entry(item) for item in entries_raw) if entry]


FALLBACK_BANK: list[dict[str, Any]] = load_fallback_bank()
