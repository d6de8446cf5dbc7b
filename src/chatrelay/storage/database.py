from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("chatrelay.storage")

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversation_turns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    user_message TEXT NOT NULL,
    ai_response TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversation_turns_conversation
    ON conversation_turns (conversation_id, id);
"""


async def init_database(db_path: str) -> aiosqlite.Connection:
    """Open the SQLite database in WAL mode and apply the schema."""
    db = await aiosqlite.connect(db_path)
    db.row_factory = aiosqlite.Row

    await db.execute("PRAGMA journal_mode=WAL")
    await db.executescript(SCHEMA)
    await db.commit()

    logger.info("Database initialized at %s", db_path)
    return db
