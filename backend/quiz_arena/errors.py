"""Domain exceptions raised by the room directory, lifecycle, round engine and settlement.

The HTTP layer maps every subclass of ArenaError onto a status code, so
nothing below knows about transport concerns.
"""
from __future__ import annotations


class ArenaError(Exception):
    """Base class for all game errors."""


class RoomNotFound(ArenaError):
    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        super().__init__(f"Room {room_id} not found")


class RoomFull(ArenaError):
    def __init__(self, room_id: str, max_players: int) -> None:
        self.room_id = room_id
        self.max_players = max_players
        super().__init__(f"Room {room_id} already has {max_players} players")


class RoomNotJoinable(ArenaError):
    """The room already left the waiting area."""


class InsufficientBalance(ArenaError):
    def __init__(self, user_id: str, required: int, available: int | None) -> None:
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(f"User {user_id} needs {required} tokens, has {available}")


class StakeDeductionFailed(ArenaError):
    """Balance check passed but the deduction write did not go through."""


class ProfileNotFound(ArenaError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Profile {user_id} not found")


class InviteNotFound(ArenaError):
    def __init__(self, invite_id: str) -> None:
        self.invite_id = invite_id
        super().__init__(f"Invite {invite_id} not found")


class InviteAlreadyAnswered(ArenaError):
    pass


class NotRoomHost(ArenaError):
    pass


class RoomStartConflict(ArenaError):
    """The one-shot start claim was already taken or the room moved on."""


class SessionNotFound(ArenaError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class SettlementError(ArenaError):
    def __init__(self, user_id: str, completed_steps: list[str], reason: str) -> None:
        self.user_id = user_id
        self.completed_steps = list(completed_steps)
        super().__init__(
            f"Settlement for {user_id} failed after {completed_steps or 'no steps'}: {reason}"
        )


class QuestionBankError(ArenaError):
    """The local fallback bank cannot produce a full question set."""
