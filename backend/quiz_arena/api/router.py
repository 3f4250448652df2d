from __future__ import annotations

from fastapi import APIRouter

from .games import router as games_router
from .profiles import router as profiles_router
from .rooms import router as rooms_router
from .system import router as system_router
from .ws import router as ws_router

api_router = APIRouter()
api_router.include_router(system_router)
api_router.include_router(profiles_router)
api_router.include_router(rooms_router)
api_router.include_router(games_router)
api_router.include_router(ws_router)
