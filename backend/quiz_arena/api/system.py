from __future__ import annotations

from fastapi import APIRouter, Depends

from ..runtime import ArenaRuntime
from .deps import get_runtime

router = APIRouter(tags=["system"])


@router.get("/api/health")
async def health(runtime: ArenaRuntime = Depends(get_runtime)) -> dict[str, object]:
    store_ok = await runtime.store.ping()
    feed_ok = await runtime.feed.ping()
    return {
        "ok": store_ok,
        "store": "up" if store_ok else "down",
        "changeFeed": "up" if feed_ok else "down",
        "activeSessions": runtime.active_sessions_count,
    }
