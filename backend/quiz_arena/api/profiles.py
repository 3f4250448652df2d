from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from ..runtime import ArenaRuntime
from ..schemas.profiles import CreateProfileRequest
from .deps import get_runtime

router = APIRouter(tags=["profiles"])


@router.post("/api/profiles")
async def create_profile(
    payload: CreateProfileRequest,
    runtime: ArenaRuntime = Depends(get_runtime),
) -> dict[str, object]:
    profile = await runtime.ensure_profile(payload.userId.strip(), payload.username)
    return {"ok": True, "profile": profile.to_dict()}


@router.get("/api/profiles/{user_id}")
async def get_profile(user_id: str, runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    profile = await runtime.get_profile(user_id)
    return {"ok": True, "profile": profile.to_dict()}


@router.get("/api/profiles/{user_id}/history")
async def get_history(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    runtime: ArenaRuntime = Depends(get_runtime),
) -> dict[str, object]:
    await runtime.get_profile(user_id)
    records = await runtime.list_history(user_id, limit=limit)
    return {"ok": True, "history": [record.to_dict() for record in records]}


@router.get("/api/profiles/{user_id}/invites")
async def get_invites(user_id: str, runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    invites = await runtime.list_invites(user_id)
    return {"ok": True, "invites": [invite.to_dict() for invite in invites]}
