from __future__ import annotations

import logging
import secrets
import string
import time
from collections.abc import AsyncIterator

from chatrelay.errors import EmptyCandidateError, SafetyBlockedError
from chatrelay.models.chat import AuthUser, ChatMessage, ChatRequest, ChatResponse, ConversationTurn
from chatrelay.models.gemini import SAFETY_FINISH_REASON
from chatrelay.services.event_stream import EventStreamEmitter
from chatrelay.services.gemini_client import GeminiClient
from chatrelay.services.reassembler import ChunkReassembler
from chatrelay.services.stream_relay import StreamRelay, pump_fragments, simulate_streaming_text
from chatrelay.storage.conversation_store import ConversationStore
from chatrelay.utils.request_log import RequestLog

logger = logging.getLogger("chatrelay.chat")

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_conversation_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"chat_{int(time.time() * 1000)}_{suffix}"


class ChatService:
    """Handles one chat turn, either as a single reply or as an event stream."""

    def __init__(
        self,
        gemini: GeminiClient,
        store: ConversationStore,
        relay: StreamRelay,
    ):
        self.gemini = gemini
        self.store = store
        self.relay = relay

    async def chat(
        self, request: ChatRequest, user: AuthUser, request_log: RequestLog
    ) -> ChatResponse:
        conversation_id = request.conversation_id or generate_conversation_id()
        request_log.event("chat.standard", "Handling standard chat", conversation_id=conversation_id)

        history = await self._history(request)
        reply = await self.gemini.generate(request.message, history, request_log=request_log)
        await self._save(conversation_id, request.message, reply, request_log)

        return ChatResponse(
            message=reply,
            conversation_id=conversation_id,
            user_id=user.user_id,
        )

    def stream_chat(
        self, request: ChatRequest, user: AuthUser, request_log: RequestLog
    ) -> AsyncIterator[str]:
        conversation_id = request.conversation_id or generate_conversation_id()
        request_log.event("chat.streaming", "Handling streaming chat", conversation_id=conversation_id)

        async def produce(emitter: EventStreamEmitter) -> None:
            history = await self._history(request)
            reassembler = ChunkReassembler()
            fragments = self.gemini.stream(
                request.message, history, reassembler=reassembler, request_log=request_log
            )
            reply = await pump_fragments(emitter, fragments, request_log)
            if reply is None:
                return
            if reassembler.finish_reason == SAFETY_FINISH_REASON:
                raise SafetyBlockedError()
            if not reply.strip():
                raise EmptyCandidateError(
                    "AI did not produce a valid reply", details="No text in streamed response"
                )

            await self._save(conversation_id, request.message, reply, request_log)
            emitter.send_done(
                {
                    "message": "Response complete",
                    "conversation_id": conversation_id,
                    "user_id": user.user_id,
                    "total_chars": len(reply),
                    "finish_reason": reassembler.finish_reason,
                }
            )

        return self.relay.events(produce, request_log)

    def demo_stream(self, text: str, delay_s: float, request_log: RequestLog) -> AsyncIterator[str]:
        async def produce(emitter: EventStreamEmitter) -> None:
            await simulate_streaming_text(emitter, text, delay_s)

        return self.relay.events(produce, request_log, start_message="Starting simulated stream...")

    async def _history(self, request: ChatRequest) -> list[ChatMessage]:
        if request.conversation_history is not None:
            return request.conversation_history
        if not request.conversation_id:
            return []
        turns = await self.store.history(request.conversation_id)
        return [message for turn in turns for message in turn.as_messages()]

    async def _save(
        self, conversation_id: str, user_message: str, reply: str, request_log: RequestLog
    ) -> None:
        # A storage failure must not fail a reply the client already has.
        try:
            await self.store.append(
                conversation_id,
                ConversationTurn(user_message=user_message, ai_response=reply),
            )
        except Exception:
            logger.exception("Failed to save conversation %s", conversation_id)
            request_log.error("storage.save", "Failed to save conversation turn")
            return
        request_log.event("storage.save", "Conversation turn saved", conversation_id=conversation_id)
