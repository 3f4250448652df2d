from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Protocol

from .change_feed import ChangeFeed, ChangeNotification
from .errors import ProfileNotFound
from .runtime_types import (
    AnswerRecord,
    GameMode,
    HistoryRecord,
    Invite,
    InviteStatus,
    MemberStatus,
    Membership,
    Profile,
    Question,
    Room,
    RoomStatus,
    ScoreLine,
)
from .runtime_utils import (
    avatar_url_for,
    level_for_games,
    random_id,
    random_player_code,
    sanitize_username,
    utc_now,
)

logger = logging.getLogger(__name__)

# Tables as seen by change-feed subscribers.
ROOMS = "rooms"
ROOM_PLAYERS = "room_players"
PLAYER_ANSWERS = "player_answers"
GAME_INVITES = "game_invites"
PROFILES = "profiles"

OPEN_ROOM_STATUSES: frozenset[str] = frozenset({"waiting", "ready"})


class RoomStore(Protocol):
    """Durable rows the game core needs, plus change notification on write."""

    feed: ChangeFeed

    async def init(self) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...

    async def get_profile(self, user_id: str) -> Profile | None: ...

    async def create_profile(self, user_id: str, username: str, *, balance: int) -> Profile: ...

    async def deduct_balance(self, user_id: str, amount: int) -> int | None: ...

    async def add_balance(self, user_id: str, amount: int) -> int: ...

    async def record_game_played(self, user_id: str, *, won: bool) -> Profile: ...

    async def append_history(self, record: HistoryRecord) -> HistoryRecord: ...

    async def list_history(self, user_id: str, *, limit: int = 50) -> list[HistoryRecord]: ...

    async def find_open_room(self, mode: GameMode, *, max_players: int) -> Room | None: ...

    async def find_seated_room(self, user_id: str, mode: GameMode) -> Room | None: ...

    async def create_room(self, host_id: str, mode: GameMode, bet_amount: int) -> Room: ...

    async def get_room(self, room_id: str) -> Room | None: ...

    async def set_room_status(
        self,
        room_id: str,
        status: RoomStatus,
        *,
        expected: Iterable[RoomStatus] | None = None,
    ) -> bool: ...

    async def claim_room_start(self, room_id: str, host_id: str, questions: list[Question]) -> bool: ...

    async def upsert_member(self, room_id: str, user_id: str, *, max_players: int | None = None) -> bool: ...

    async def remove_member(self, room_id: str, user_id: str) -> bool: ...

    async def set_member_status(self, room_id: str, user_id: str, status: MemberStatus) -> None: ...

    async def list_members(self, room_id: str) -> list[Membership]: ...

    async def record_answer(self, answer: AnswerRecord) -> bool: ...

    async def answer_stats(self, room_id: str) -> dict[str, ScoreLine]: ...

    async def create_invite(self, room_id: str, from_user_id: str, to_user_id: str) -> Invite: ...

    async def get_invite(self, invite_id: str) -> Invite | None: ...

    async def list_pending_invites(self, user_id: str) -> list[Invite]: ...

    async def set_invite_status(
        self,
        invite_id: str,
        status: InviteStatus,
        *,
        expected: InviteStatus = "pending",
    ) -> bool: ...

    async def list_abandoned_rooms(self, created_before: datetime) -> list[str]: ...


class InMemoryRoomStore:
    """Process-local store for offline play and the test-suite.

    Writes complete synchronously between awaits, so conditional updates are
    atomic with respect to other coroutines; notifications go out afterwards.
    """

    def __init__(self, feed: ChangeFeed) -> None:
        self.feed = feed
        self.profiles: dict[str, Profile] = {}
        self.rooms: dict[str, Room] = {}
        self.members: dict[str, dict[str, Membership]] = {}
        self.answers: dict[tuple[str, str, int], AnswerRecord] = {}
        self.invites: dict[str, Invite] = {}
        self.history: list[HistoryRecord] = []
        self.fail_writes: set[str] = set()

    async def _notify(self, table: str, key: str, event: str) -> None:
        await self.feed.publish(ChangeNotification(table=table, key=key, event=event))

    def _check_write(self, operation: str) -> None:
        # Lets tests simulate a failing store write for one operation.
        if operation in self.fail_writes:
            raise ConnectionError(f"store write failed: {operation}")

    def _room_view(self, room: Room) -> Room:
        return replace(room, player_count=len(self.members.get(room.id, {})))

    async def init(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    async def get_profile(self, user_id: str) -> Profile | None:
        profile = self.profiles.get(user_id)
        return replace(profile) if profile else None

    async def create_profile(self, user_id: str, username: str, *, balance: int) -> Profile:
        existing = self.profiles.get(user_id)
        if existing is not None:
            return replace(existing)
        profile = Profile(
            id=user_id,
            username=sanitize_username(username),
            avatar_url=avatar_url_for(user_id),
            balance=balance,
            player_code=random_player_code(),
        )
        self.profiles[user_id] = profile
        await self._notify(PROFILES, user_id, "insert")
        return replace(profile)

    async def deduct_balance(self, user_id: str, amount: int) -> int | None:
        self._check_write("deduct_balance")
        profile = self.profiles.get(user_id)
        if profile is None or profile.balance < amount:
            return None
        profile.balance -= amount
        await self._notify(PROFILES, user_id, "update")
        return profile.balance

    async def add_balance(self, user_id: str, amount: int) -> int:
        self._check_write("add_balance")
        profile = self.profiles.get(user_id)
        if profile is None:
            raise ProfileNotFound(user_id)
        profile.balance += amount
        await self._notify(PROFILES, user_id, "update")
        return profile.balance

    async def record_game_played(self, user_id: str, *, won: bool) -> Profile:
        self._check_write("record_game_played")
        profile = self.profiles.get(user_id)
        if profile is None:
            raise ProfileNotFound(user_id)
        profile.total_games += 1
        if won:
            profile.total_wins += 1
        profile.level = level_for_games(profile.total_games)
        await self._notify(PROFILES, user_id, "update")
        return replace(profile)

    async def append_history(self, record: HistoryRecord) -> HistoryRecord:
        self._check_write("append_history")
        stored = replace(record, id=random_id(), played_at=utc_now())
        self.history.append(stored)
        return stored

    async def list_history(self, user_id: str, *, limit: int = 50) -> list[HistoryRecord]:
        records = [record for record in reversed(self.history) if record.user_id == user_id]
        return records[:limit]

    async def find_open_room(self, mode: GameMode, *, max_players: int) -> Room | None:
        candidates = sorted(
            (
                room
                for room in self.rooms.values()
                if room.mode == mode
                and room.status in OPEN_ROOM_STATUSES
                and len(self.members.get(room.id, {})) < max_players
            ),
            key=lambda room: room.created_at,
        )
        return self._room_view(candidates[0]) if candidates else None

    async def find_seated_room(self, user_id: str, mode: GameMode) -> Room | None:
        candidates = sorted(
            (
                room
                for room in self.rooms.values()
                if room.mode == mode
                and room.status in OPEN_ROOM_STATUSES
                and user_id in self.members.get(room.id, {})
            ),
            key=lambda room: room.created_at,
        )
        return self._room_view(candidates[0]) if candidates else None

    async def create_room(self, host_id: str, mode: GameMode, bet_amount: int) -> Room:
        self._check_write("create_room")
        room = Room(
            id=random_id(),
            host_id=host_id,
            mode=mode,
            status="waiting",
            bet_amount=bet_amount,
            created_at=utc_now(),
        )
        self.rooms[room.id] = room
        self.members[room.id] = {}
        await self._notify(ROOMS, room.id, "insert")
        return self._room_view(room)

    async def get_room(self, room_id: str) -> Room | None:
        room = self.rooms.get(room_id)
        return self._room_view(room) if room else None

    async def set_room_status(
        self,
        room_id: str,
        status: RoomStatus,
        *,
        expected: Iterable[RoomStatus] | None = None,
    ) -> bool:
        self._check_write("set_room_status")
        room = self.rooms.get(room_id)
        if room is None:
            return False
        if expected is not None and room.status not in set(expected):
            return False
        if room.status == status:
            return True
        room.status = status
        await self._notify(ROOMS, room_id, "update")
        return True

    async def claim_room_start(self, room_id: str, host_id: str, questions: list[Question]) -> bool:
        self._check_write("claim_room_start")
        room = self.rooms.get(room_id)
        if (
            room is None
            or room.host_id != host_id
            or room.status not in OPEN_ROOM_STATUSES
            or room.questions is not None
        ):
            return False
        room.questions = list(questions)
        room.status = "playing"
        room.started_at = utc_now()
        await self._notify(ROOMS, room_id, "update")
        return True

    async def upsert_member(self, room_id: str, user_id: str, *, max_players: int | None = None) -> bool:
        """Seat a user; with ``max_players`` only into an open room that still has a free seat."""
        self._check_write("upsert_member")
        members = self.members.setdefault(room_id, {})
        if user_id in members:
            return False
        if max_players is not None:
            room = self.rooms.get(room_id)
            if room is None or room.status not in OPEN_ROOM_STATUSES or len(members) >= max_players:
                return False
        members[user_id] = Membership(room_id=room_id, user_id=user_id, joined_at=utc_now())
        await self._notify(ROOM_PLAYERS, room_id, "insert")
        return True

    async def remove_member(self, room_id: str, user_id: str) -> bool:
        self._check_write("remove_member")
        members = self.members.get(room_id, {})
        if members.pop(user_id, None) is None:
            return False
        await self._notify(ROOM_PLAYERS, room_id, "delete")
        return True

    async def set_member_status(self, room_id: str, user_id: str, status: MemberStatus) -> None:
        self._check_write("set_member_status")
        membership = self.members.get(room_id, {}).get(user_id)
        if membership is None or membership.status == status:
            return
        membership.status = status
        await self._notify(ROOM_PLAYERS, room_id, "update")

    async def list_members(self, room_id: str) -> list[Membership]:
        members = self.members.get(room_id, {}).values()
        return [replace(member) for member in sorted(members, key=lambda member: member.joined_at)]

    async def record_answer(self, answer: AnswerRecord) -> bool:
        self._check_write("record_answer")
        key = (answer.room_id, answer.user_id, answer.question_index)
        if key in self.answers:
            return False
        self.answers[key] = answer
        await self._notify(PLAYER_ANSWERS, answer.room_id, "insert")
        return True

    async def answer_stats(self, room_id: str) -> dict[str, ScoreLine]:
        stats: dict[str, ScoreLine] = {}
        for answer in self.answers.values():
            if answer.room_id != room_id:
                continue
            line = stats.setdefault(answer.user_id, ScoreLine())
            if answer.is_correct:
                line.correct += 1
            else:
                line.wrong += 1
        return stats

    async def create_invite(self, room_id: str, from_user_id: str, to_user_id: str) -> Invite:
        self._check_write("create_invite")
        invite = Invite(
            id=random_id(),
            room_id=room_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            status="pending",
            created_at=utc_now(),
        )
        self.invites[invite.id] = invite
        await self._notify(GAME_INVITES, to_user_id, "insert")
        return replace(invite)

    async def get_invite(self, invite_id: str) -> Invite | None:
        invite = self.invites.get(invite_id)
        return replace(invite) if invite else None

    async def list_pending_invites(self, user_id: str) -> list[Invite]:
        invites = [
            replace(invite)
            for invite in self.invites.values()
            if invite.to_user_id == user_id and invite.status == "pending"
        ]
        return sorted(invites, key=lambda invite: invite.created_at, reverse=True)

    async def set_invite_status(
        self,
        invite_id: str,
        status: InviteStatus,
        *,
        expected: InviteStatus = "pending",
    ) -> bool:
        self._check_write("set_invite_status")
        invite = self.invites.get(invite_id)
        if invite is None or invite.status != expected:
            return False
        invite.status = status
        await self._notify(GAME_INVITES, invite.to_user_id, "update")
        return True

    async def list_abandoned_rooms(self, created_before: datetime) -> list[str]:
        return [
            room.id
            for room in self.rooms.values()
            if room.status in OPEN_ROOM_STATUSES
            and room.created_at < created_before
            and not self.members.get(room.id)
        ]
