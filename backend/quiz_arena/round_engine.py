"""Timed question loop for one round.

Each question runs the full clock before reveal, even when every answer is
already in. Live counts live on the participants and change the moment an
answer lands. The displayed leaderboard reads ``display_scores`` instead, a
separate mapping copied from the live counts only when the engine advances
past a reveal, so it always trails by exactly one question. Final ranking
uses the live counts.

In online modes each process only decides answers for its own participant
(and bots, which only exist in local play); other players' counts are
re-derived from persisted answer records.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable

from .bots import BotAnswer, pick_bot_option, simulate_bot_answer
from .config import settings
from .runtime_constants import OPTIONS_PER_QUESTION
from .runtime_types import (
    AnswerRecord,
    GameMode,
    Participant,
    Question,
    RoundPhase,
    ScoreLine,
    TransitionEvent,
)
from .runtime_utils import difficulty_tier_for
from .store import RoomStore
from .timers import TimerKey, TimerRegistry

logger = logging.getLogger(__name__)

EventSink = Callable[[dict[str, Any]], None]


def rank_participants(
    participants: Iterable[Participant],
    scores: dict[str, ScoreLine] | None = None,
) -> list[Participant]:
    """Fewest wrong answers first, then most correct; seating order breaks ties.

    Surrendered participants are left out. ``scores`` ranks by a lagged
    display mapping instead of the live counters.
    """

    def sort_key(participant: Participant) -> tuple[int, int]:
        if scores is None:
            return participant.wrong_answers, -participant.correct_answers
        line = scores.get(participant.id) or ScoreLine()
        return line.wrong, -line.correct

    eligible = [participant for participant in participants if not participant.has_surrendered]
    return sorted(eligible, key=sort_key)


@dataclass
class RoundResult:
    round_id: str
    room_id: str
    mode: GameMode
    stake: int
    roster_size: int
    participants: list[Participant]
    ranking: list[Participant]
    completed: bool = True
    ended_by: str | None = None

    @property
    def bank(self) -> int:
        return self.stake * self.roster_size

    @property
    def winner_id(self) -> str | None:
        if not self.completed or not self.ranking:
            return None
        return self.ranking[0].id

    def participant(self, participant_id: str) -> Participant | None:
        return next((item for item in self.participants if item.id == participant_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "roundId": self.round_id,
            "roomId": self.room_id,
            "mode": self.mode,
            "stake": self.stake,
            "bank": self.bank,
            "rosterSize": self.roster_size,
            "completed": self.completed,
            "winnerId": self.winner_id,
            "ranking": [participant.to_dict() for participant in self.ranking],
        }


class RoundEngine:
    def __init__(
        self,
        round_id: str,
        questions: list[Question],
        participants: list[Participant],
        *,
        me_id: str,
        mode: GameMode,
        stake: int = 0,
        room_id: str | None = None,
        store: RoomStore | None = None,
        rng: random.Random | None = None,
        on_event: EventSink | None = None,
        on_finished: Callable[[RoundResult], Awaitable[None]] | None = None,
        on_surrender: Callable[[Participant, RoundResult], Awaitable[None]] | None = None,
        time_unit: float = settings.time_unit_seconds,
        question_time_units: int = settings.question_time_units,
        intro_delay_units: int = settings.intro_delay_units,
        reveal_delay_units: int = settings.reveal_delay_units,
    ) -> None:
        if not questions:
            raise ValueError("A round needs at least one question")
        ids = [participant.id for participant in participants]
        if len(set(ids)) != len(ids):
            raise ValueError("Participant ids must be unique")

        self.round_id = round_id
        self.room_id = room_id or round_id
        self.questions = list(questions)
        self.participants = list(participants)
        self.me_id = me_id
        self.mode: GameMode = mode
        self.stake = stake
        self.store = store
        self.rng = rng or random.Random()
        self.on_event = on_event
        self.on_finished = on_finished
        self.on_surrender = on_surrender
        self.time_unit = time_unit
        self.question_time_units = question_time_units
        self.intro_delay_units = intro_delay_units
        self.reveal_delay_units = reveal_delay_units

        for participant in self.participants:
            participant.is_me = participant.id == me_id
        self._by_id = {participant.id: participant for participant in self.participants}
        self.roster_size = len(self.participants)
        self.display_scores: dict[str, ScoreLine] = {
            participant.id: ScoreLine() for participant in self.participants
        }
        self.phase: RoundPhase = "loading"
        self.current_index = -1
        self.time_left = 0
        self.result: RoundResult | None = None
        self.timers = TimerRegistry()
        self.lock = self.timers.lock
        self._bot_plans: dict[tuple[str, int], BotAnswer] = {}

    @property
    def online(self) -> bool:
        return self.store is not None and self.mode != "bot"

    @property
    def ordinal(self) -> int:
        return self.current_index + 1

    @property
    def current_question(self) -> Question | None:
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None

    @property
    def me(self) -> Participant | None:
        return self._by_id.get(self.me_id)

    def _is_local(self, participant: Participant) -> bool:
        return participant.is_me or participant.is_bot

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.on_event is not None:
            self.on_event(payload)

    def _set_phase(self, phase: RoundPhase, **payload: Any) -> None:
        previous = self.phase
        self.phase = phase
        logger.debug("round_engine phase round=%s %s->%s", self.round_id, previous, phase)
        self._emit(TransitionEvent("round", previous, phase, payload).to_dict())

    async def start(self) -> None:
        async with self.lock:
            if self.phase != "loading":
                return
            logger.info(
                "round_engine start round=%s mode=%s players=%s questions=%s",
                self.round_id,
                self.mode,
                self.roster_size,
                len(self.questions),
            )
            self._set_phase("countdown_intro", totalQuestions=len(self.questions))
            self.timers.schedule(
                TimerKey(self.round_id, "intro"),
                self.intro_delay_units * self.time_unit,
                self._on_intro_elapsed,
            )

    async def stop(self) -> None:
        self.timers.cancel_all()

    async def _on_intro_elapsed(self, key: TimerKey) -> None:
        if self.phase != "countdown_intro":
            return
        self._begin_question(0)

    def _begin_question(self, index: int) -> None:
        self.current_index = index
        self.time_left = self.question_time_units
        ordinal = self.ordinal
        for participant in self.participants:
            participant.current_answer = None
            participant.has_answered = False

        for participant in self.participants:
            if not participant.is_bot or participant.has_surrendered:
                continue
            plan = simulate_bot_answer(ordinal, self.rng)
            if plan.delay_units >= self.question_time_units:
                continue
            self._bot_plans[(participant.id, ordinal)] = plan
            self.timers.schedule(
                TimerKey(self.round_id, f"bot:{participant.id}", ordinal),
                plan.delay_units * self.time_unit,
                self._on_bot_answer,
            )

        question = self.questions[index]
        self._set_phase(
            "playing",
            questionNumber=ordinal,
            difficulty=difficulty_tier_for(ordinal),
            category=question.category,
        )
        self.timers.schedule(
            TimerKey(self.round_id, "clock", ordinal),
            self.time_unit,
            self._on_clock_tick,
        )

    def _apply_answer(self, participant: Participant, answer_index: int | None) -> bool:
        question = self.questions[self.current_index]
        correct = answer_index is not None and answer_index == question.correct_index
        participant.current_answer = answer_index
        participant.has_answered = True
        if correct:
            participant.correct_answers += 1
        else:
            participant.wrong_answers += 1
        return correct

    async def _on_bot_answer(self, key: TimerKey) -> None:
        if self.phase != "playing" or key.ordinal != self.ordinal:
            return
        bot_id = key.name.split(":", 1)[1]
        plan = self._bot_plans.pop((bot_id, key.ordinal), None)
        bot = self._by_id.get(bot_id)
        if plan is None or bot is None or bot.has_surrendered or bot.has_answered:
            return
        question = self.questions[self.current_index]
        self._apply_answer(bot, pick_bot_option(question.correct_index, plan.correct, self.rng))
        self._emit({"type": "answered", "participantId": bot_id, "questionNumber": key.ordinal})

    async def submit_answer(self, answer_index: int, participant_id: str | None = None) -> bool:
        """Record one answer for the current question.

        Returns False when the answer is not accepted: not in ``playing``,
        already answered, surrendered, or not controlled by this process.
        The first accepted answer for a question stands.
        """
        if not 0 <= answer_index < OPTIONS_PER_QUESTION:
            raise ValueError(f"answer_index must be in 0..{OPTIONS_PER_QUESTION - 1}")
        async with self.lock:
            participant = self._by_id.get(participant_id or self.me_id)
            if participant is None:
                raise ValueError(f"Unknown participant {participant_id or self.me_id}")
            if (
                self.phase != "playing"
                or participant.has_surrendered
                or participant.has_answered
                or not self._is_local(participant)
            ):
                return False

            question = self.questions[self.current_index]
            if self.online and participant.is_me:
                await self.store.record_answer(  # type: ignore[union-attr]
                    AnswerRecord(
                        room_id=self.room_id,
                        user_id=participant.id,
                        question_index=self.current_index,
                        answer_index=answer_index,
                        is_correct=answer_index == question.correct_index,
                    )
                )
            self._apply_answer(participant, answer_index)
            self._emit({"type": "answered", "participantId": participant.id, "questionNumber": self.ordinal})
            return True

    async def _on_clock_tick(self, key: TimerKey) -> None:
        if self.phase != "playing" or key.ordinal != self.ordinal:
            return
        self.time_left -= 1
        if self.time_left > 0:
            self._emit({"type": "tick", "questionNumber": self.ordinal, "timeLeft": self.time_left})
            self.timers.schedule(key, self.time_unit, self._on_clock_tick)
            return
        await self._close_question()

    async def _close_question(self) -> None:
        ordinal = self.ordinal
        self.timers.cancel_where(lambda key: key.name.startswith("bot:"))
        self._bot_plans.clear()

        for participant in self.participants:
            if participant.has_surrendered or participant.has_answered or not self._is_local(participant):
                continue
            self._apply_answer(participant, None)
            if self.online and participant.is_me:
                await self._persist_timeout(participant)

        question = self.questions[self.current_index]
        self.time_left = 0
        self._set_phase("revealing", questionNumber=ordinal, correctIndex=question.correct_index)
        self.timers.schedule(
            TimerKey(self.round_id, "reveal", ordinal),
            self.reveal_delay_units * self.time_unit,
            self._on_reveal_elapsed,
        )

    async def _persist_timeout(self, participant: Participant) -> None:
        try:
            await self.store.record_answer(  # type: ignore[union-attr]
                AnswerRecord(
                    room_id=self.room_id,
                    user_id=participant.id,
                    question_index=self.current_index,
                    answer_index=None,
                    is_correct=False,
                )
            )
        except Exception:
            logger.exception(
                "round_engine timeout persist failed round=%s user=%s question=%s",
                self.round_id,
                participant.id,
                self.ordinal,
            )

    async def _on_reveal_elapsed(self, key: TimerKey) -> None:
        if self.phase != "revealing" or key.ordinal != self.ordinal:
            return
        await self._refresh_remote_safely()
        self.display_scores = {
            participant.id: ScoreLine(participant.correct_answers, participant.wrong_answers)
            for participant in self.participants
        }
        if self.current_index + 1 >= len(self.questions):
            await self._finish()
            return
        self._begin_question(self.current_index + 1)

    def _build_result(self, *, completed: bool, ended_by: str | None = None) -> RoundResult:
        roster = [replace(participant) for participant in self.participants]
        return RoundResult(
            round_id=self.round_id,
            room_id=self.room_id,
            mode=self.mode,
            stake=self.stake,
            roster_size=self.roster_size,
            participants=roster,
            ranking=rank_participants(roster),
            completed=completed,
            ended_by=ended_by,
        )

    def _charge_missing_remote_answers(self) -> None:
        """A remote player without a record for some question lost it, like a timeout."""
        if not self.online:
            return
        played = len(self.questions)
        for participant in self.participants:
            if self._is_local(participant) or participant.has_surrendered:
                continue
            missing = played - participant.correct_answers - participant.wrong_answers
            if missing > 0:
                participant.wrong_answers += missing
                logger.info(
                    "round_engine unanswered round=%s participant=%s missing=%s",
                    self.round_id,
                    participant.id,
                    missing,
                )

    async def _finish(self) -> None:
        self.timers.cancel_all()
        self._charge_missing_remote_answers()
        self.result = self._build_result(completed=True)
        logger.info(
            "round_engine finished round=%s winner=%s ranked=%s",
            self.round_id,
            self.result.winner_id,
            len(self.result.ranking),
        )
        self._set_phase(
            "finished",
            winnerId=self.result.winner_id,
            ranking=[participant.id for participant in self.result.ranking],
        )
        if self.on_finished is not None:
            await self.on_finished(self.result)

    async def surrender(self, participant_id: str | None = None) -> bool:
        async with self.lock:
            participant = self._by_id.get(participant_id or self.me_id)
            if participant is None:
                raise ValueError(f"Unknown participant {participant_id or self.me_id}")
            if self.phase in ("loading", "finished") or participant.has_surrendered:
                return False
            if not self._is_local(participant):
                return False

            participant.has_surrendered = True
            self.timers.cancel_where(lambda key: key.name == f"bot:{participant.id}")
            for plan_key in [plan_key for plan_key in self._bot_plans if plan_key[0] == participant.id]:
                del self._bot_plans[plan_key]
            logger.info(
                "round_engine surrender round=%s participant=%s question=%s",
                self.round_id,
                participant.id,
                self.ordinal,
            )
            self._emit({"type": "surrendered", "participantId": participant.id, "questionNumber": self.ordinal})

            if not participant.is_me:
                return True

            if self.online:
                try:
                    await self.store.set_member_status(  # type: ignore[union-attr]
                        self.room_id, participant.id, "surrendered"
                    )
                except Exception:
                    logger.exception(
                        "round_engine surrender persist failed round=%s user=%s",
                        self.round_id,
                        participant.id,
                    )
            self.timers.cancel_all()
            self.result = self._build_result(completed=False, ended_by=participant.id)
            self._set_phase("finished", reason="surrender", participantId=participant.id)
            if self.on_surrender is not None:
                await self.on_surrender(replace(participant), self.result)
            return True

    async def refresh_remote(self) -> None:
        async with self.lock:
            await self._refresh_remote()

    async def _refresh_remote_safely(self) -> None:
        try:
            await self._refresh_remote()
        except Exception:
            logger.exception("round_engine remote refresh failed round=%s", self.round_id)

    async def _refresh_remote(self) -> None:
        """Re-derive other players' counts and surrender flags from the store."""
        if not self.online or self.phase == "finished":
            return
        stats = await self.store.answer_stats(self.room_id)  # type: ignore[union-attr]
        members = await self.store.list_members(self.room_id)  # type: ignore[union-attr]
        statuses = {member.user_id: member.status for member in members}
        for participant in self.participants:
            if self._is_local(participant):
                continue
            line = stats.get(participant.id)
            if line is not None:
                participant.correct_answers = line.correct
                participant.wrong_answers = line.wrong
            if statuses.get(participant.id, "surrendered") == "surrendered":
                participant.has_surrendered = True

    def snapshot(self) -> dict[str, Any]:
        finished = self.phase == "finished"
        scores = None if finished else self.display_scores
        question = self.current_question
        question_payload: dict[str, Any] | None = None
        if question is not None and not finished:
            question_payload = {
                "id": question.id,
                "text": question.text,
                "options": list(question.options),
                "category": question.category,
                "questionNumber": self.ordinal,
                "difficulty": difficulty_tier_for(self.ordinal),
            }
            if self.phase == "revealing":
                question_payload["correctIndex"] = question.correct_index

        participants_payload: list[dict[str, Any]] = []
        for participant in self.participants:
            item = participant.to_dict()
            if scores is not None:
                line = scores.get(participant.id) or ScoreLine()
                item["correctAnswers"] = line.correct
                item["wrongAnswers"] = line.wrong
            participants_payload.append(item)

        me = self.me
        return {
            "roundId": self.round_id,
            "roomId": self.room_id,
            "mode": self.mode,
            "phase": self.phase,
            "questionNumber": self.ordinal if self.current_index >= 0 else 0,
            "totalQuestions": len(self.questions),
            "timeLeft": self.time_left,
            "stake": self.stake,
            "bank": self.stake * self.roster_size,
            "question": question_payload,
            "myAnswer": me.current_answer if me else None,
            "participants": participants_payload,
            "leaderboard": [participant.id for participant in rank_participants(self.participants, scores)],
            "result": self.result.to_dict() if self.result else None,
        }
