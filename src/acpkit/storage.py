"""SQLite-backed conversation and message storage."""
from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Protocol

from acpkit.messages import compose_message
from acpkit.models import Message
from acpkit.utils import now_ms


class ConversationStore(Protocol):
    """What the agent manager needs from persistent storage."""

    def get_conversation(self, conversation_id: str) -> dict[str, Any] | None: ...

    def update_conversation(self, conversation_id: str, updates: dict[str, Any]) -> bool: ...

    def add_message(self, conversation_id: str, message: Message) -> None: ...

    def add_or_update_message(self, conversation_id: str, message: Message) -> Message: ...

    def get_messages(self, conversation_id: str) -> list[Message]: ...


class SqliteConversationStore:
    """SQLite-backed storage for conversations and their messages."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            db_dir = Path.home() / ".acpkit"
            db_dir.mkdir(parents=True, exist_ok=True)
            db_path = db_dir / "conversations.db"
        self._db_path = str(db_path)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database tables."""
        with sqlite3.connect(self._db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    type TEXT DEFAULT 'acp',
                    name TEXT DEFAULT '',
                    created_at INTEGER,
                    updated_at INTEGER,
                    extra TEXT DEFAULT '{}'
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    msg_id TEXT,
                    type TEXT,
                    position TEXT,
                    status TEXT,
                    content TEXT DEFAULT '{}',
                    created_at INTEGER,
                    seq INTEGER
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_merge"
                " ON messages (conversation_id, msg_id)"
            )
            conn.commit()

    # -- conversations ------------------------------------------------------

    def create_conversation(
        self,
        conversation_id: str,
        extra: dict[str, Any] | None = None,
        name: str = "",
        type: str = "acp",
    ) -> None:
        """Insert or replace a conversation record."""
        now = now_ms()
        with sqlite3.connect(self._db_path) as conn:
            conn.execute(
                """INSERT INTO conversations (id, type, name, created_at, updated_at, extra)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                   type=excluded.type, name=excluded.name,
                   updated_at=excluded.updated_at, extra=excluded.extra""",
                (conversation_id, type, name, now, now, json.dumps(extra or {})),
            )
            conn.commit()

    def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        with sqlite3.connect(self._db_path) as conn:
            row = conn.execute(
                "SELECT id, type, name, created_at, updated_at, extra"
                " FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
            if row is None:
                return None
            return {
                "id": row[0],
                "type": row[1],
                "name": row[2],
                "created_at": row[3],
                "updated_at": row[4],
                "extra": json.loads(row[5]),
            }

    def update_conversation(self, conversation_id: str, updates: dict[str, Any]) -> bool:
        """Update ``name``/``type``/``extra`` of a conversation. Returns True if it existed."""
        current = self.get_conversation(conversation_id)
        if current is None:
            return False
        extra = updates.get("extra", current["extra"])
        with sqlite3.connect(self._db_path) as conn:
            conn.execute(
                "UPDATE conversations SET type = ?, name = ?, extra = ?, updated_at = ?"
                " WHERE id = ?",
                (
                    updates.get("type", current["type"]),
                    updates.get("name", current["name"]),
                    json.dumps(extra),
                    now_ms(),
                    conversation_id,
                ),
            )
            conn.commit()
        return True

    def delete_conversation(self, conversation_id: str) -> bool:
        with sqlite3.connect(self._db_path) as conn:
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            cursor = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            conn.commit()
            return cursor.rowcount > 0

    # -- messages -----------------------------------------------------------

    def add_message(self, conversation_id: str, message: Message) -> None:
        """Append a message."""
        with sqlite3.connect(self._db_path) as conn:
            self._insert(conn, conversation_id, message)
            conn.commit()

    def add_or_update_message(self, conversation_id: str, message: Message) -> Message:
        """
        Merge ``message`` into the stored message with the same merge-key, or
        append it. Returns the stored result.
        """
        with sqlite3.connect(self._db_path) as conn:
            row = conn.execute(
                "SELECT id, msg_id, type, position, status, content, created_at"
                " FROM messages WHERE conversation_id = ? AND msg_id = ? AND type = ?"
                " ORDER BY seq DESC LIMIT 1",
                (conversation_id, message.msg_id, message.type),
            ).fetchone()
            if row is None:
                self._insert(conn, conversation_id, message)
                conn.commit()
                return message

            existing = self._row_to_message(conversation_id, row)
            merged = compose_message(existing, message)
            conn.execute(
                "UPDATE messages SET content = ?, status = ? WHERE id = ?",
                (json.dumps(merged.content), merged.status, existing.id),
            )
            conn.commit()
            return merged

    def get_messages(self, conversation_id: str) -> list[Message]:
        with sqlite3.connect(self._db_path) as conn:
            rows = conn.execute(
                "SELECT id, msg_id, type, position, status, content, created_at"
                " FROM messages WHERE conversation_id = ? ORDER BY seq",
                (conversation_id,),
            ).fetchall()
            return [self._row_to_message(conversation_id, r) for r in rows]

    def _insert(self, conn: sqlite3.Connection, conversation_id: str, message: Message) -> None:
        seq = conn.execute(
            "SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE conversation_id = ?",
            (conversation_id,),
        ).fetchone()[0]
        conn.execute(
            """INSERT INTO messages
               (id, conversation_id, msg_id, type, position, status, content, created_at, seq)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET content=excluded.content, status=excluded.status""",
            (
                message.id,
                conversation_id,
                message.msg_id,
                message.type,
                message.position,
                message.status,
                json.dumps(message.content),
                message.created_at,
                seq,
            ),
        )

    @staticmethod
    def _row_to_message(conversation_id: str, row: tuple) -> Message:
        return Message(
            id=row[0],
            msg_id=row[1],
            type=row[2],
            position=row[3],
            status=row[4],
            content=json.loads(row[5]),
            created_at=row[6],
            conversation_id=conversation_id,
        )
