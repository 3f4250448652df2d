from __future__ import annotations

from fastapi import APIRouter, WebSocket

router = APIRouter(tags=["websocket"])


@router.websocket("/api/ws/{session_id}")
async def websocket_api(ws: WebSocket, session_id: str) -> None:
    await ws.app.state.runtime.handle_websocket(ws, session_id)
