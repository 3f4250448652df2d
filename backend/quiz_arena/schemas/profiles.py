from __future__ import annotations

from pydantic import BaseModel, Field


class CreateProfileRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=64)
    username: str = Field(default="Player", max_length=64)
