from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

GameMode = Literal["bot", "random", "friends"]
RoomStatus = Literal["waiting", "ready", "playing", "finished"]
LifecycleState = Literal["waiting", "ready", "counting_down", "starting", "playing", "finished"]
RoundPhase = Literal["loading", "countdown_intro", "playing", "revealing", "finished"]
MemberStatus = Literal["joined", "surrendered"]
InviteStatus = Literal["pending", "accepted", "declined"]
GameResultKind = Literal["win", "loss", "surrender"]
DifficultyTier = Literal["easy", "medium", "hard", "expert"]


@dataclass(frozen=True)
class Question:
    id: str
    text: str
    options: tuple[str, str, str, str]
    correct_index: int
    category: str
    question_number: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "options": list(self.options),
            "correctIndex": self.correct_index,
            "category": self.category,
            "questionNumber": self.question_number,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Question":
        options = tuple(str(option) for option in raw["options"])
        return cls(
            id=str(raw["id"]),
            text=str(raw["text"]),
            options=options,  # type: ignore[arg-type]
            correct_index=int(raw["correctIndex"]),
            category=str(raw.get("category") or ""),
            question_number=int(raw["questionNumber"]),
        )


@dataclass
class Profile:
    id: str
    username: str
    avatar_url: str
    balance: int
    total_wins: int = 0
    total_games: int = 0
    level: int = 1
    player_code: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "avatarUrl": self.avatar_url,
            "balance": self.balance,
            "totalWins": self.total_wins,
            "totalGames": self.total_games,
            "level": self.level,
            "playerCode": self.player_code,
        }


@dataclass
class Participant:
    id: str
    username: str
    avatar_url: str
    correct_answers: int = 0
    wrong_answers: int = 0
    current_answer: int | None = None
    has_answered: bool = False
    is_bot: bool = False
    is_me: bool = False
    has_surrendered: bool = False
    is_connected: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "avatarUrl": self.avatar_url,
            "correctAnswers": self.correct_answers,
            "wrongAnswers": self.wrong_answers,
            "hasAnswered": self.has_answered,
            "isBot": self.is_bot,
            "isMe": self.is_me,
            "hasSurrendered": self.has_surrendered,
            "isConnected": self.is_connected,
        }


@dataclass
class ScoreLine:
    correct: int = 0
    wrong: int = 0


@dataclass
class Membership:
    room_id: str
    user_id: str
    joined_at: datetime
    status: MemberStatus = "joined"


@dataclass
class Room:
    id: str
    host_id: str
    mode: GameMode
    status: RoomStatus
    bet_amount: int
    created_at: datetime
    questions: list[Question] | None = None
    started_at: datetime | None = None
    player_count: int = 0

    @property
    def bank(self) -> int:
        return self.bet_amount * self.player_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hostId": self.host_id,
            "mode": self.mode,
            "status": self.status,
            "betAmount": self.bet_amount,
            "playerCount": self.player_count,
            "bank": self.bank,
            "hasQuestions": self.questions is not None,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
        }


@dataclass
class Invite:
    id: str
    room_id: str
    from_user_id: str
    to_user_id: str
    status: InviteStatus
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "roomId": self.room_id,
            "fromUserId": self.from_user_id,
            "toUserId": self.to_user_id,
            "status": self.status,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class AnswerRecord:
    room_id: str
    user_id: str
    question_index: int
    answer_index: int | None
    is_correct: bool


@dataclass(frozen=True)
class HistoryRecord:
    user_id: str
    room_id: str
    mode: GameMode
    result: GameResultKind
    correct_answers: int
    wrong_answers: int
    total_players: int
    bet_amount: int
    earnings: int
    played_at: datetime | None = None
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "roomId": self.room_id,
            "mode": self.mode,
            "result": self.result,
            "correctAnswers": self.correct_answers,
            "wrongAnswers": self.wrong_answers,
            "totalPlayers": self.total_players,
            "betAmount": self.bet_amount,
            "earnings": self.earnings,
            "playedAt": self.played_at.isoformat() if self.played_at else None,
        }


@dataclass
class TransitionEvent:
    source: Literal["room", "round"]
    previous: str
    current: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "transition",
            "source": self.source,
            "from": self.previous,
            "to": self.current,
            "payload": dict(self.payload),
        }
