"""
SQLite connection management and schema initialization for chat history.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


async def connect(db_path: str) -> aiosqlite.Connection:
    """Open a connection in WAL mode with Row factory and an initialized schema."""
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(db_path)
    db.row_factory = aiosqlite.Row
    # WAL mode: allows concurrent reads while writing
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await init_schema(db)
    logger.info(f"Database initialized at {db_path}")
    return db


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Chat: one group conversation
        -- participant_ids is a JSON array, in join order
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS chats (
            id               TEXT PRIMARY KEY,
            title            TEXT NOT NULL,
            participant_ids  TEXT NOT NULL DEFAULT '[]',
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL
        );

        -- ----------------------------------------------------------------
        -- Message: one log entry; seq is the chat-local log sequence
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS messages (
            chat_id         TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
            seq             INTEGER NOT NULL,
            id              TEXT NOT NULL,
            timestamp       TEXT NOT NULL,
            source          TEXT NOT NULL,
            content         TEXT NOT NULL,
            is_streaming    INTEGER NOT NULL DEFAULT 0,
            persist         INTEGER NOT NULL DEFAULT 1,
            thinking_trace  TEXT,
            PRIMARY KEY (chat_id, seq)
        );

        CREATE INDEX IF NOT EXISTS idx_messages_chat_seq
            ON messages(chat_id, seq);
    """)
    await db.commit()
    logger.info("Schema initialized.")
