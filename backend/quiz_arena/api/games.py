from __future__ import annotations

from fastapi import APIRouter, Depends

from ..runtime import ArenaRuntime
from ..schemas.rooms import SubmitAnswerRequest
from .deps import get_runtime

router = APIRouter(tags=["games"])


@router.get("/api/sessions/{session_id}")
async def session_state(session_id: str, runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    return {"ok": True, "session": runtime.get_session(session_id).snapshot()}


@router.post("/api/sessions/{session_id}/answer")
async def submit_answer(
    session_id: str,
    payload: SubmitAnswerRequest,
    runtime: ArenaRuntime = Depends(get_runtime),
) -> dict[str, object]:
    accepted = await runtime.submit_answer(session_id, payload.answerIndex)
    return {"ok": True, "accepted": accepted}


@router.post("/api/sessions/{session_id}/surrender")
async def surrender(session_id: str, runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    surrendered = await runtime.surrender(session_id)
    return {"ok": True, "surrendered": surrendered}


@router.post("/api/sessions/{session_id}/force-start")
async def force_start(session_id: str, runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    await runtime.force_start(session_id)
    return {"ok": True, "session": runtime.get_session(session_id).snapshot()}


@router.post("/api/sessions/{session_id}/retry-start")
async def retry_start(session_id: str, runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    await runtime.retry_start(session_id)
    return {"ok": True, "session": runtime.get_session(session_id).snapshot()}


@router.post("/api/sessions/{session_id}/retry-settlement")
async def retry_settlement(session_id: str, runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    receipt = await runtime.retry_settlement(session_id)
    return {"ok": True, "receipt": receipt.to_dict()}


@router.post("/api/sessions/{session_id}/leave")
async def leave(session_id: str, runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    session = await runtime.leave(session_id)
    return {"ok": True, "session": session.snapshot()}
