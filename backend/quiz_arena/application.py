from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.router import api_router
from .errors import (
    ArenaError,
    InsufficientBalance,
    InviteAlreadyAnswered,
    InviteNotFound,
    NotRoomHost,
    ProfileNotFound,
    QuestionBankError,
    RoomFull,
    RoomNotFound,
    RoomNotJoinable,
    RoomStartConflict,
    SessionNotFound,
    SettlementError,
    StakeDeductionFailed,
)
from .runtime import ArenaRuntime, build_runtime

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[ArenaError], int], ...] = (
    (RoomNotFound, 404),
    (ProfileNotFound, 404),
    (InviteNotFound, 404),
    (SessionNotFound, 404),
    (InsufficientBalance, 402),
    (NotRoomHost, 403),
    (RoomFull, 409),
    (RoomNotJoinable, 409),
    (InviteAlreadyAnswered, 409),
    (RoomStartConflict, 409),
    (StakeDeductionFailed, 502),
    (SettlementError, 502),
    (QuestionBankError, 503),
)


def status_for_error(exc: ArenaError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def create_app(runtime: ArenaRuntime | None = None) -> FastAPI:
    app = FastAPI(title="Quiz Arena Backend", version="1.0.0")
    app.state.runtime = runtime or build_runtime()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    @app.exception_handler(ArenaError)
    async def on_arena_error(request: Request, exc: ArenaError) -> JSONResponse:
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.warning("request failed path=%s error=%r", request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"ok": False, "error": exc.__class__.__name__, "detail": str(exc)},
        )

    @app.on_event("startup")
    async def on_startup() -> None:
        await app.state.runtime.start()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await app.state.runtime.shutdown()

    return app
