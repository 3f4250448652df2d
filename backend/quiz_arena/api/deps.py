from __future__ import annotations

from fastapi import Request

from ..runtime import ArenaRuntime


def get_runtime(request: Request) -> ArenaRuntime:
    return request.app.state.runtime
