from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: str | None = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: str = Field(min_length=1)
    stream: bool = False
    conversation_id: str | None = None
    conversation_history: list[ChatMessage] | None = None
    user_id: str | None = None
    session_id: str | None = None


class ChatResponse(BaseModel):
    message: str
    conversation_id: str
    timestamp: str = Field(default_factory=utc_now_iso)
    user_id: str | None = None


class ConversationTurn(BaseModel):
    user_message: str
    ai_response: str
    timestamp: str = Field(default_factory=utc_now_iso)

    def as_messages(self) -> list[ChatMessage]:
        return [
            ChatMessage(role="user", content=self.user_message, timestamp=self.timestamp),
            ChatMessage(role="assistant", content=self.ai_response, timestamp=self.timestamp),
        ]


class AuthUser(BaseModel):
    id: str
    user_id: str
    email: str | None = None
    role: str | None = None
