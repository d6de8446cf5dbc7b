"""Response shapes of the Gemini ``generateContent`` family of endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

SAFETY_FINISH_REASON = "SAFETY"


class _GeminiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Part(_GeminiModel):
    text: str | None = None


class Content(_GeminiModel):
    parts: list[Part] = []
    role: str | None = None


class SafetyRating(_GeminiModel):
    category: str
    probability: str


class Candidate(_GeminiModel):
    content: Content | None = None
    finish_reason: str | None = None
    index: int | None = None
    safety_ratings: list[SafetyRating] | None = None

    def texts(self) -> list[str]:
        """Non-empty text parts, in order."""
        if self.content is None:
            return []
        return [part.text for part in self.content.parts if part.text]

    @property
    def safety_blocked(self) -> bool:
        return self.finish_reason == SAFETY_FINISH_REASON


class PromptFeedback(_GeminiModel):
    block_reason: str | None = None
    safety_ratings: list[SafetyRating] | None = None


class GenerateContentResponse(_GeminiModel):
    candidates: list[Candidate] = []
    prompt_feedback: PromptFeedback | None = None

    def first_candidate(self) -> Candidate | None:
        return self.candidates[0] if self.candidates else None
