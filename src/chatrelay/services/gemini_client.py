from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing

import httpx

from chatrelay.config import Settings
from chatrelay.errors import (
    ConfigurationError,
    EmptyCandidateError,
    SafetyBlockedError,
    UpstreamConnectionError,
    UpstreamEmptyBodyError,
    UpstreamHttpError,
    UpstreamTimeoutError,
)
from chatrelay.models.chat import ChatMessage
from chatrelay.models.gemini import GenerateContentResponse
from chatrelay.services.reassembler import ChunkReassembler, reassemble
from chatrelay.utils.request_log import RequestLog

logger = logging.getLogger("chatrelay.gemini")

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"


class GeminiClient:
    """Calls the Gemini generateContent endpoints.

    ``generate`` returns the whole reply; ``stream`` yields text fragments as
    the upstream body arrives. Neither retries: one failed call fails the
    request.
    """

    def __init__(self, http_client: httpx.AsyncClient, settings: Settings):
        self.http_client = http_client
        self.settings = settings

    @property
    def model(self) -> str:
        return self.settings.gemini_model.lower()

    def _endpoint(self, method: str) -> str:
        return f"/models/{self.model}:{method}"

    def _params(self) -> dict:
        if not self.settings.gemini_configured:
            raise ConfigurationError(
                "Gemini API key is not configured",
                details="Set CHATRELAY_GEMINI_API_KEY",
            )
        return {"key": self.settings.gemini_api_key}

    def build_request_body(
        self, message: str, history: Sequence[ChatMessage] | None = None
    ) -> dict:
        contents = []
        for turn in history or ():
            # Gemini has no system role in contents
            if turn.role == "system":
                continue
            contents.append(
                {
                    "role": "model" if turn.role == "assistant" else "user",
                    "parts": [{"text": turn.content}],
                }
            )
        contents.append({"role": "user", "parts": [{"text": message}]})

        return {
            "contents": contents,
            "generationConfig": {
                "temperature": self.settings.gemini_temperature,
                "maxOutputTokens": self.settings.gemini_max_tokens,
                "topP": 0.8,
                "topK": 40,
            },
            "safetySettings": [
                {"category": category, "threshold": SAFETY_THRESHOLD}
                for category in HARM_CATEGORIES
            ],
        }

    async def generate(
        self,
        message: str,
        history: Sequence[ChatMessage] | None = None,
        request_log: RequestLog | None = None,
    ) -> str:
        """Single-shot call; returns the joined text of the first candidate."""
        params = self._params()
        payload = self.build_request_body(message, history)
        if request_log:
            request_log.event("gemini.request", "Sending generateContent", model=self.model)

        try:
            resp = await self.http_client.post(
                self._endpoint("generateContent"), params=params, json=payload
            )
        except httpx.TimeoutException as exc:
            logger.error("Upstream timeout")
            raise UpstreamTimeoutError("Gemini API timed out") from exc
        except httpx.TransportError as exc:
            logger.error("Cannot connect to upstream: %s", exc)
            raise UpstreamConnectionError("Cannot connect to Gemini API", details=str(exc)) from exc

        if not resp.is_success:
            logger.error("Gemini API request failed: %d %s", resp.status_code, resp.text[:200])
            raise UpstreamHttpError(resp.status_code, resp.text)

        try:
            data = GenerateContentResponse.model_validate(resp.json())
        except ValueError as exc:
            raise EmptyCandidateError(
                "AI did not produce a valid reply", details="Unparseable upstream response"
            ) from exc

        text = self.extract_text(data)
        if request_log:
            request_log.event("gemini.response", "Received reply", chars=len(text))
        return text

    @staticmethod
    def extract_text(response: GenerateContentResponse) -> str:
        candidate = response.first_candidate()
        if candidate is None:
            raise EmptyCandidateError("AI did not produce a valid reply", details="No candidates")
        if candidate.safety_blocked:
            logger.warning("Response blocked for safety reasons")
            raise SafetyBlockedError()

        texts = candidate.texts()
        if not texts:
            raise EmptyCandidateError("AI did not produce a valid reply", details="No text parts")
        return "".join(texts).strip()

    async def stream(
        self,
        message: str,
        history: Sequence[ChatMessage] | None = None,
        reassembler: ChunkReassembler | None = None,
        request_log: RequestLog | None = None,
    ) -> AsyncIterator[str]:
        """Yield text fragments from ``streamGenerateContent``.

        Status errors are raised before the first fragment.
        """
        params = self._params()
        payload = self.build_request_body(message, history)
        reassembler = reassembler or ChunkReassembler()
        if request_log:
            request_log.event("gemini.stream", "Sending streamGenerateContent", model=self.model)

        try:
            async with self.http_client.stream(
                "POST", self._endpoint("streamGenerateContent"), params=params, json=payload
            ) as resp:
                if not resp.is_success:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    logger.error("Gemini API stream request failed: %d %s", resp.status_code, body[:200])
                    raise UpstreamHttpError(resp.status_code, body)

                received = 0

                async def counted_chunks():
                    nonlocal received
                    async for chunk in resp.aiter_bytes():
                        received += len(chunk)
                        yield chunk

                fragments = 0
                async with aclosing(reassemble(counted_chunks(), reassembler)) as texts:
                    async for text in texts:
                        fragments += 1
                        yield text
                if received == 0:
                    raise UpstreamEmptyBodyError()

                if request_log:
                    request_log.event(
                        "gemini.stream_end",
                        "Upstream stream finished",
                        bytes=received,
                        fragments=fragments,
                        dropped=reassembler.objects_dropped,
                    )
        except httpx.TimeoutException as exc:
            logger.error("Upstream timeout")
            raise UpstreamTimeoutError("Gemini API timed out") from exc
        except httpx.TransportError as exc:
            logger.error("Cannot connect to upstream: %s", exc)
            raise UpstreamConnectionError("Cannot connect to Gemini API", details=str(exc)) from exc
