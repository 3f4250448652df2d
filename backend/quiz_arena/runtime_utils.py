from __future__ import annotations

import random
import re
import uuid
from datetime import datetime, timezone

from .runtime_constants import (
    AVATAR_URL_TEMPLATE,
    DIFFICULTY_TIERS,
    EXPERT_TIER,
    GAMES_PER_LEVEL,
    PLAYER_CODE_CHARS,
)
from .runtime_types import DifficultyTier


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def random_id() -> str:
    return str(uuid.uuid4())


def random_player_code(length: int = 6) -> str:
    return "".join(random.choice(PLAYER_CODE_CHARS) for _ in range(max(4, length)))


def avatar_url_for(seed: str) -> str:
    return AVATAR_URL_TEMPLATE.format(seed=re.sub(r"[^A-Za-z0-9_-]", "", seed) or "player")


def sanitize_username(raw: str | None) -> str:
    value = re.sub(r"\s+", " ", str(raw or "")).strip()[:24].strip()
    return value or "Player"


def difficulty_tier_for(ordinal: int) -> DifficultyTier:
    for upper, tier, _ in DIFFICULTY_TIERS:
        if ordinal <= upper:
            return tier
    return EXPERT_TIER[0]


def base_accuracy_for(ordinal: int) -> float:
    for upper, _, accuracy in DIFFICULTY_TIERS:
        if ordinal <= upper:
            return accuracy
    return EXPERT_TIER[1]


def level_for_games(total_games: int) -> int:
    return max(0, int(total_games)) // GAMES_PER_LEVEL + 1
