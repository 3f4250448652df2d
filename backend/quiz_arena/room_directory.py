"""Matchmaking, membership and invites.

Room creation under a matchmaking race is not serialized: two callers that
both miss an open room each create one, and the spare drains as later
callers join the oldest open room first.

A stake is charged before any room write. When a later write fails, or the
user turns out to be seated already, the stake is credited back.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable

from .config import settings
from .errors import (
    InsufficientBalance,
    InviteAlreadyAnswered,
    InviteNotFound,
    ProfileNotFound,
    RoomFull,
    RoomNotFound,
    RoomNotJoinable,
    StakeDeductionFailed,
)
from .runtime_types import GameMode, Invite, Participant, Room
from .store import OPEN_ROOM_STATUSES, RoomStore

logger = logging.getLogger(__name__)

MATCHMAKING_ATTEMPTS = 3


class RoomDirectory:
    def __init__(
        self,
        store: RoomStore,
        *,
        max_players: int = settings.max_players,
        stake_for_mode: Callable[[str], int] = settings.bet_for_mode,
    ) -> None:
        self.store = store
        self.max_players = max_players
        self.stake_for_mode = stake_for_mode

    async def charge_stake(self, user_id: str, amount: int) -> None:
        """Check the balance, then deduct ``amount``; nothing changes when the check fails."""
        if amount <= 0:
            return
        profile = await self.store.get_profile(user_id)
        if profile is None:
            raise ProfileNotFound(user_id)
        if profile.balance < amount:
            raise InsufficientBalance(user_id, amount, profile.balance)
        try:
            remaining = await self.store.deduct_balance(user_id, amount)
        except Exception as exc:
            raise StakeDeductionFailed(f"Stake deduction for {user_id} failed: {exc}") from exc
        if remaining is None:
            raise StakeDeductionFailed(f"Stake deduction for {user_id} was not applied")
        logger.info("room_directory stake user=%s amount=%s balance=%s", user_id, amount, remaining)

    async def _refund(self, user_id: str, amount: int, reason: str) -> None:
        if amount <= 0:
            return
        try:
            balance = await self.store.add_balance(user_id, amount)
        except Exception:
            logger.exception("room_directory refund failed user=%s amount=%s reason=%s", user_id, amount, reason)
            return
        logger.warning(
            "room_directory refunded user=%s amount=%s reason=%s balance=%s",
            user_id,
            amount,
            reason,
            balance,
        )

    async def find_or_create_room(
        self,
        user_id: str,
        mode: GameMode,
        stake: int | None = None,
    ) -> str:
        stake = self.stake_for_mode(mode) if stake is None else stake
        seated = await self.store.find_seated_room(user_id, mode)
        if seated is not None:
            logger.info("room_directory already seated user=%s room=%s mode=%s", user_id, seated.id, mode)
            return seated.id

        await self.charge_stake(user_id, stake)
        try:
            return await self._match_or_create(user_id, mode, stake)
        except Exception:
            await self._refund(user_id, stake, "matchmaking failed")
            raise

    async def _match_or_create(self, user_id: str, mode: GameMode, stake: int) -> str:
        for _ in range(MATCHMAKING_ATTEMPTS):
            room = await self.store.find_open_room(mode, max_players=self.max_players)
            if room is None:
                break
            try:
                joined = await self.join_room(room.id, user_id)
            except (RoomFull, RoomNotJoinable):
                # Filled or started between lookup and join.
                continue
            if not joined:
                await self._refund(user_id, stake, "already seated")
            logger.info("room_directory matched user=%s room=%s mode=%s", user_id, room.id, mode)
            return room.id

        room = await self.store.create_room(user_id, mode, stake)
        await self.store.upsert_member(room.id, user_id)
        logger.info("room_directory created user=%s room=%s mode=%s stake=%s", user_id, room.id, mode, stake)
        return room.id

    async def create_game_room(
        self,
        host_id: str,
        mode: GameMode = "friends",
        stake: int | None = None,
        invitees: Iterable[str] = (),
    ) -> str:
        stake = self.stake_for_mode(mode) if stake is None else stake
        await self.charge_stake(host_id, stake)

        try:
            room = await self.store.create_room(host_id, mode, stake)
            await self.store.upsert_member(room.id, host_id)
        except Exception:
            await self._refund(host_id, stake, "room creation failed")
            raise
        for friend_id in dict.fromkeys(invitees):
            if friend_id != host_id:
                await self.send_invite(room.id, host_id, friend_id)
        logger.info("room_directory created game room=%s host=%s mode=%s", room.id, host_id, mode)
        return room.id

    async def get_room(self, room_id: str) -> Room:
        room = await self.store.get_room(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        return room

    async def _is_seated(self, room_id: str, user_id: str) -> bool:
        """True when already a member; raises when the room cannot take the user."""
        room = await self.get_room(room_id)
        members = await self.store.list_members(room_id)
        if any(member.user_id == user_id for member in members):
            return True
        if room.status not in OPEN_ROOM_STATUSES:
            raise RoomNotJoinable(f"Room {room_id} is already {room.status}")
        if len(members) >= self.max_players:
            raise RoomFull(room_id, self.max_players)
        return False

    async def join_room(self, room_id: str, user_id: str) -> bool:
        """Idempotent membership upsert. Returns True when the user was newly seated."""
        if await self._is_seated(room_id, user_id):
            return False
        if await self.store.upsert_member(room_id, user_id, max_players=self.max_players):
            return True
        # The room started, filled up or seated this user since the check.
        if await self._is_seated(room_id, user_id):
            return False
        raise RoomFull(room_id, self.max_players)

    async def enter_room(self, room_id: str, user_id: str) -> bool:
        """Seat a user in an open room, charging the room stake on first entry only."""
        room = await self.get_room(room_id)
        if await self._is_seated(room_id, user_id):
            return False
        await self.charge_stake(user_id, room.bet_amount)
        try:
            joined = await self.join_room(room_id, user_id)
        except Exception:
            await self._refund(user_id, room.bet_amount, "join failed")
            raise
        if not joined:
            await self._refund(user_id, room.bet_amount, "already seated")
        return joined

    async def leave_room(self, room_id: str, user_id: str) -> bool:
        removed = await self.store.remove_member(room_id, user_id)
        if removed:
            logger.info("room_directory left user=%s room=%s", user_id, room_id)
        return removed

    async def get_room_players(self, room_id: str, *, viewer_id: str | None = None) -> list[Participant]:
        players: list[Participant] = []
        for member in await self.store.list_members(room_id):
            profile = await self.store.get_profile(member.user_id)
            players.append(
                Participant(
                    id=member.user_id,
                    username=profile.username if profile else "Player",
                    avatar_url=profile.avatar_url if profile else "",
                    is_me=member.user_id == viewer_id,
                    has_surrendered=member.status == "surrendered",
                )
            )
        return players

    async def send_invite(self, room_id: str, from_user_id: str, to_user_id: str) -> Invite:
        await self.get_room(room_id)
        invite = await self.store.create_invite(room_id, from_user_id, to_user_id)
        logger.info(
            "room_directory invite=%s room=%s from=%s to=%s",
            invite.id,
            room_id,
            from_user_id,
            to_user_id,
        )
        return invite

    async def list_pending_invites(self, user_id: str) -> list[Invite]:
        return await self.store.list_pending_invites(user_id)

    async def respond_to_invite(self, invite_id: str, user_id: str, accept: bool) -> Room | None:
        """Accepting charges the room stake, marks the invite and seats the user."""
        invite = await self.store.get_invite(invite_id)
        if invite is None or invite.to_user_id != user_id:
            raise InviteNotFound(invite_id)
        if invite.status != "pending":
            raise InviteAlreadyAnswered(f"Invite {invite_id} is already {invite.status}")

        if not accept:
            if not await self.store.set_invite_status(invite_id, "declined"):
                raise InviteAlreadyAnswered(f"Invite {invite_id} was answered concurrently")
            return None

        room = await self.get_room(invite.room_id)
        if room.status not in OPEN_ROOM_STATUSES:
            raise RoomNotJoinable(f"Room {room.id} is already {room.status}")
        if room.player_count >= self.max_players:
            raise RoomFull(room.id, self.max_players)
        await self.charge_stake(user_id, room.bet_amount)
        try:
            accepted = await self.store.set_invite_status(invite_id, "accepted")
        except Exception:
            await self._refund(user_id, room.bet_amount, "invite update failed")
            raise
        if not accepted:
            await self._refund(user_id, room.bet_amount, "invite answered concurrently")
            raise InviteAlreadyAnswered(f"Invite {invite_id} was answered concurrently")

        try:
            joined = await self.join_room(room.id, user_id)
        except Exception:
            await self._reopen_invite(invite_id)
            await self._refund(user_id, room.bet_amount, "join failed")
            raise
        if not joined:
            await self._refund(user_id, room.bet_amount, "already seated")
        return await self.get_room(room.id)

    async def _reopen_invite(self, invite_id: str) -> None:
        try:
            await self.store.set_invite_status(invite_id, "pending", expected="accepted")
        except Exception:
            logger.exception("room_directory could not reopen invite=%s", invite_id)
