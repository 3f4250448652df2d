from __future__ import annotations

from fastapi import APIRouter, Depends

from ..runtime import ArenaRuntime
from ..schemas.rooms import (
    CreateFriendsGameRequest,
    FindGameRequest,
    JoinRoomRequest,
    RespondInviteRequest,
    SendInviteRequest,
)
from .deps import get_runtime

router = APIRouter(tags=["rooms"])


@router.post("/api/rooms/find")
async def find_game(payload: FindGameRequest, runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    session = await runtime.find_game(payload.userId, payload.mode)
    return {"ok": True, "session": session.snapshot()}


@router.post("/api/rooms/friends")
async def create_friends_game(
    payload: CreateFriendsGameRequest,
    runtime: ArenaRuntime = Depends(get_runtime),
) -> dict[str, object]:
    session = await runtime.create_friends_game(payload.userId, payload.invitees)
    return {"ok": True, "session": session.snapshot()}


@router.get("/api/rooms/{room_id}")
async def room_state(room_id: str, runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    room = await runtime.directory.get_room(room_id)
    players = await runtime.directory.get_room_players(room_id)
    return {
        "ok": True,
        "room": room.to_dict(),
        "players": [player.to_dict() for player in players],
    }


@router.post("/api/rooms/{room_id}/join")
async def join_room(
    room_id: str,
    payload: JoinRoomRequest,
    runtime: ArenaRuntime = Depends(get_runtime),
) -> dict[str, object]:
    session = await runtime.join_room(payload.userId, room_id)
    return {"ok": True, "session": session.snapshot()}


@router.post("/api/rooms/{room_id}/invites")
async def send_invite(
    room_id: str,
    payload: SendInviteRequest,
    runtime: ArenaRuntime = Depends(get_runtime),
) -> dict[str, object]:
    invite = await runtime.send_invite(room_id, payload.fromUserId, payload.toUserId)
    return {"ok": True, "invite": invite.to_dict()}


@router.post("/api/invites/{invite_id}/respond")
async def respond_to_invite(
    invite_id: str,
    payload: RespondInviteRequest,
    runtime: ArenaRuntime = Depends(get_runtime),
) -> dict[str, object]:
    session = await runtime.respond_to_invite(invite_id, payload.userId, payload.accept)
    return {"ok": True, "session": session.snapshot() if session else None}
