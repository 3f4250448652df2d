from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator


class FindGameRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=64)
    mode: Literal["bot", "random", "friends"] = Field(default="random")


class CreateFriendsGameRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=64)
    invitees: list[str] = Field(default_factory=list, max_length=20)

    @field_validator("invitees")
    @classmethod
    def strip_invitees(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item and item.strip()]


class JoinRoomRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=64)


class SendInviteRequest(BaseModel):
    fromUserId: str = Field(min_length=1, max_length=64)
    toUserId: str = Field(min_length=1, max_length=64)


class RespondInviteRequest(BaseModel):
    userId: str = Field(min_length=1, max_length=64)
    accept: bool


class SubmitAnswerRequest(BaseModel):
    answerIndex: int = Field(ge=0, le=3)
