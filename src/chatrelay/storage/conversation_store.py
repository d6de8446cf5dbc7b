from __future__ import annotations

import logging
from typing import Protocol

import aiosqlite

from chatrelay.models.chat import ConversationTurn, utc_now_iso
from chatrelay.models.health import StorageStats

logger = logging.getLogger("chatrelay.storage")


class ConversationStore(Protocol):
    """Append-only log of conversation turns keyed by conversation id."""

    storage_type: str

    async def append(self, conversation_id: str, turn: ConversationTurn) -> None: ...

    async def history(self, conversation_id: str) -> list[ConversationTurn]: ...

    async def stats(self) -> StorageStats: ...


class InMemoryConversationStore:
    storage_type = "in-memory"

    def __init__(self):
        self._conversations: dict[str, list[ConversationTurn]] = {}
        self._last_updated = utc_now_iso()

    async def append(self, conversation_id: str, turn: ConversationTurn) -> None:
        turns = self._conversations.setdefault(conversation_id, [])
        turns.append(turn)
        self._last_updated = turn.timestamp
        logger.debug("Saved turn %d of conversation %s", len(turns), conversation_id)

    async def history(self, conversation_id: str) -> list[ConversationTurn]:
        return list(self._conversations.get(conversation_id, ()))

    async def stats(self) -> StorageStats:
        return StorageStats(
            total_conversations=len(self._conversations),
            total_messages=sum(len(turns) for turns in self._conversations.values()),
            storage_type=self.storage_type,
            last_updated=self._last_updated,
        )


class SqliteConversationStore:
    """Conversation log persisted in the ``conversation_turns`` table."""

    storage_type = "sqlite"

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def append(self, conversation_id: str, turn: ConversationTurn) -> None:
        await self.db.execute(
            """
            INSERT INTO conversation_turns (conversation_id, user_message, ai_response, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (conversation_id, turn.user_message, turn.ai_response, turn.timestamp),
        )
        await self.db.commit()
        logger.debug("Saved turn of conversation %s", conversation_id)

    async def history(self, conversation_id: str) -> list[ConversationTurn]:
        cursor = await self.db.execute(
            """
            SELECT user_message, ai_response, created_at
            FROM conversation_turns
            WHERE conversation_id = ?
            ORDER BY id
            """,
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        return [
            ConversationTurn(
                user_message=row["user_message"],
                ai_response=row["ai_response"],
                timestamp=row["created_at"],
            )
            for row in rows
        ]

    async def stats(self) -> StorageStats:
        cursor = await self.db.execute(
            """
            SELECT COUNT(DISTINCT conversation_id), COUNT(*), MAX(created_at)
            FROM conversation_turns
            """
        )
        row = await cursor.fetchone()
        return StorageStats(
            total_conversations=row[0],
            total_messages=row[1],
            storage_type=self.storage_type,
            last_updated=row[2] or utc_now_iso(),
        )
