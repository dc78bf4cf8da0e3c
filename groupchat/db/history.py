"""
Chat history store.

Persists sessions to SQLite and mirrors each one to a JSON transcript that
participants are pointed at by their prompt. The in-memory log stays
authoritative; every write here is a snapshot of it.
"""
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiosqlite

from groupchat.db.database import connect
from groupchat.models import ChatSummary, Message, utc_now
from groupchat.session import Session

logger = logging.getLogger(__name__)


def _now() -> str:
    return utc_now().isoformat()


class HistoryStore:
    def __init__(self, db: aiosqlite.Connection, transcript_dir: Path) -> None:
        self._db = db
        self.transcript_dir = Path(transcript_dir)
        # Saves of one session arrive from several controllers; keep each snapshot atomic
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, db_path: str, transcript_dir: Path) -> "HistoryStore":
        db = await connect(db_path)
        Path(transcript_dir).mkdir(parents=True, exist_ok=True)
        return cls(db, transcript_dir)

    async def close(self) -> None:
        await self._db.close()
        logger.info("History store closed.")

    def transcript_path(self, chat_id: str) -> Path:
        return self.transcript_dir / f"{chat_id}.json"

    def debug_log_path(self, chat_id: str) -> Path:
        return self.transcript_dir / f"{chat_id}.debug.log"

    # ─────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────

    async def save(self, session: Session) -> None:
        messages = [m for m in session.messages if m.persist]
        async with self._lock:
            now = _now()
            await self._db.execute(
                """
                INSERT INTO chats (id, title, participant_ids, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    participant_ids = excluded.participant_ids,
                    updated_at = excluded.updated_at
                """,
                (session.id, session.title, json.dumps(session.participant_ids), session.created_at.isoformat(), now),
            )
            await self._db.execute("DELETE FROM messages WHERE chat_id = ?", (session.id,))
            await self._db.executemany(
                """
                INSERT INTO messages (chat_id, seq, id, timestamp, source, content, is_streaming, persist, thinking_trace)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [_message_row(session.id, seq, m) for seq, m in enumerate(messages, start=1)],
            )
            await self._db.commit()
            await asyncio.to_thread(self._write_transcript, session, messages)
        logger.debug(f"Saved chat {session.id}: {len(messages)} messages")

    def _write_transcript(self, session: Session, messages: list[Message]) -> None:
        path = self.transcript_path(session.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        names = []
        for m in messages:
            if m.source.kind == "agent" and m.source.display_name not in names:
                names.append(m.source.display_name)
        data = {
            "chat_id": session.id,
            "title": session.title,
            "participants": names,
            "messages": [
                {"seq": seq, "speaker": m.source.display_name, **m.to_dict()}
                for seq, m in enumerate(messages, start=1)
            ],
        }
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)

    async def delete(self, chat_id: str) -> bool:
        async with self._lock:
            await self._db.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
            async with self._db.execute("DELETE FROM chats WHERE id = ?", (chat_id,)) as cur:
                deleted = cur.rowcount > 0
            await self._db.commit()
        for path in (self.transcript_path(chat_id), self.debug_log_path(chat_id)):
            path.unlink(missing_ok=True)
        if deleted:
            logger.info(f"Deleted chat history {chat_id}")
        return deleted

    # ─────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────

    async def load(self, chat_id: str) -> Optional[Session]:
        async with self._db.execute("SELECT * FROM chats WHERE id = ?", (chat_id,)) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        async with self._db.execute(
            "SELECT * FROM messages WHERE chat_id = ? ORDER BY seq ASC", (chat_id,)
        ) as cur:
            rows = await cur.fetchall()
        return Session(
            id=row["id"],
            title=row["title"],
            participant_ids=json.loads(row["participant_ids"] or "[]"),
            created_at=datetime.fromisoformat(row["created_at"]),
            messages=[_row_to_message(r) for r in rows],
        )

    async def list_all(self) -> list[ChatSummary]:
        async with self._db.execute("SELECT * FROM chats ORDER BY updated_at DESC") as cur:
            rows = await cur.fetchall()
        summaries = []
        for row in rows:
            async with self._db.execute(
                "SELECT source FROM messages WHERE chat_id = ? ORDER BY seq ASC", (row["id"],)
            ) as cur:
                sources = [json.loads(r["source"]) for r in await cur.fetchall()]
            names = []
            for source in sources:
                if source.get("kind") == "agent" and source.get("name") and source["name"] not in names:
                    names.append(source["name"])
            summaries.append(ChatSummary(
                id=row["id"],
                title=row["title"],
                participants=names,
                participant_ids=json.loads(row["participant_ids"] or "[]"),
                created_at=datetime.fromisoformat(row["created_at"]),
                updated_at=datetime.fromisoformat(row["updated_at"]),
                message_count=len(sources),
            ))
        return summaries


def _message_row(chat_id: str, seq: int, m: Message) -> tuple:
    data = m.to_dict()
    return (
        chat_id,
        seq,
        m.id,
        data["timestamp"],
        json.dumps(data["source"]),
        m.content,
        int(m.is_streaming),
        int(m.persist),
        json.dumps(data["thinking_trace"]) if "thinking_trace" in data else None,
    )


def _row_to_message(row: aiosqlite.Row) -> Message:
    data = {
        "id": row["id"],
        "timestamp": row["timestamp"],
        "source": json.loads(row["source"]),
        "content": row["content"],
        "is_streaming": bool(row["is_streaming"]),
        "persist": bool(row["persist"]),
    }
    if row["thinking_trace"]:
        data["thinking_trace"] = json.loads(row["thinking_trace"])
    return Message.from_dict(data)
