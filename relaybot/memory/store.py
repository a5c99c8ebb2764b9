"""
Conversation store: chats, messages and the content translation cache.

All three tables live in the process-wide database. Messages are never
deleted; clearing a conversation stamps ``cleared_at`` and the row drops
out of active context. Translation rows are written once and never updated.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from relaybot.core.content import Message, message_from_dict
from relaybot.memory.database import Database

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS chats (
    chat_id TEXT PRIMARY KEY,
    is_enabled INTEGER NOT NULL DEFAULT 0,
    system_prompt TEXT,
    model TEXT,
    respond_on_any INTEGER NOT NULL DEFAULT 0,
    respond_on_mention INTEGER NOT NULL DEFAULT 1,
    respond_on_reply INTEGER NOT NULL DEFAULT 0,
    debug_until TEXT,
    content_models TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    message_id INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id TEXT NOT NULL REFERENCES chats(chat_id),
    sender_id TEXT NOT NULL DEFAULT '',
    message_data TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    cleared_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_chat_ts
    ON messages(chat_id, timestamp);

CREATE TABLE IF NOT EXISTS content_translations (
    content_hash TEXT NOT NULL,
    model_id TEXT NOT NULL,
    translation TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (content_hash, model_id)
);
"""

# Columns update_chat may touch, with their value converters.
_CHAT_FIELDS = {
    "is_enabled": int,
    "system_prompt": lambda v: v,
    "model": lambda v: v,
    "respond_on_any": int,
    "respond_on_mention": int,
    "respond_on_reply": int,
    "debug_until": lambda v: v.isoformat() if isinstance(v, datetime) else v,
    "content_models": lambda v: json.dumps(v or {}),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Chat:
    chat_id: str
    is_enabled: bool = False
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    respond_on_any: bool = False
    respond_on_mention: bool = True
    respond_on_reply: bool = False
    debug_until: Optional[datetime] = None
    content_models: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any) -> "Chat":
        return cls(
            chat_id=row["chat_id"],
            is_enabled=bool(row["is_enabled"]),
            system_prompt=row["system_prompt"],
            model=row["model"],
            respond_on_any=bool(row["respond_on_any"]),
            respond_on_mention=bool(row["respond_on_mention"]),
            respond_on_reply=bool(row["respond_on_reply"]),
            debug_until=parse_timestamp(row["debug_until"]),
            content_models=json.loads(row["content_models"] or "{}"),
        )

    def is_debug(self, now: Optional[datetime] = None) -> bool:
        if self.debug_until is None:
            return False
        return self.debug_until > (now or utc_now())


@dataclass
class MessageRow:
    message_id: int
    chat_id: str
    sender_ids: List[str]
    message_data: Message
    timestamp: datetime
    cleared_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "MessageRow":
        senders = row["sender_id"] or ""
        return cls(
            message_id=row["message_id"],
            chat_id=row["chat_id"],
            sender_ids=[s for s in senders.split(",") if s],
            message_data=message_from_dict(json.loads(row["message_data"])),
            timestamp=parse_timestamp(row["timestamp"]),
            cleared_at=parse_timestamp(row["cleared_at"]),
        )


class ConversationStore:
    """Chats, messages and translations on one :class:`Database` handle."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self.db.executescript(SCHEMA)

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        row = self.db.query_one("SELECT * FROM chats WHERE chat_id = ?", (chat_id,))
        return Chat.from_row(row) if row else None

    def create_chat(self, chat_id: str) -> Chat:
        """Insert the chat with default settings if it does not exist yet."""
        created = self.db.execute(
            "INSERT OR IGNORE INTO chats (chat_id, created_at) VALUES (?, ?)",
            (chat_id, _iso(utc_now())),
        )
        if created:
            logger.info("Created chat %s", chat_id)
        return self.get_chat(chat_id)

    def update_chat(self, chat_id: str, **fields: Any) -> Chat:
        """Update whitelisted chat columns; unknown names raise ``ValueError``."""
        unknown = set(fields) - set(_CHAT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown chat field(s): {', '.join(sorted(unknown))}")
        self.create_chat(chat_id)
        if fields:
            names = sorted(fields)
            assignments = ", ".join(f"{n} = ?" for n in names)
            values = [_CHAT_FIELDS[n](fields[n]) for n in names]
            self.db.execute(
                f"UPDATE chats SET {assignments} WHERE chat_id = ?",
                values + [chat_id],
            )
        return self.get_chat(chat_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(
        self,
        chat_id: str,
        message_data: Message,
        sender_ids: Optional[List[str]] = None,
        timestamp: Optional[datetime] = None,
    ) -> MessageRow:
        ts = timestamp or utc_now()
        payload = json.dumps(message_data.to_dict(), ensure_ascii=False)
        senders = ",".join(sender_ids or [])
        message_id = self.db.insert(
            "INSERT INTO messages (chat_id, sender_id, message_data, timestamp) "
            "VALUES (?, ?, ?, ?)",
            (chat_id, senders, payload, _iso(ts)),
        )
        return MessageRow(message_id, chat_id, list(sender_ids or []), message_data, ts)

    def get_messages(self, chat_id: str, limit: int = 50) -> List[MessageRow]:
        """Newest first, cleared messages excluded."""
        rows = self.db.query(
            "SELECT * FROM messages WHERE chat_id = ? AND cleared_at IS NULL "
            "ORDER BY timestamp DESC, message_id DESC LIMIT ?",
            (chat_id, limit),
        )
        return [MessageRow.from_row(r) for r in rows]

    def get_messages_since(
        self, chat_id: str, since: datetime, limit: int = 50
    ) -> List[MessageRow]:
        """Oldest first, including cleared messages, from ``since`` on."""
        rows = self.db.query(
            "SELECT * FROM messages WHERE chat_id = ? AND timestamp >= ? "
            "ORDER BY timestamp ASC, message_id ASC LIMIT ?",
            (chat_id, _iso(since), limit),
        )
        return [MessageRow.from_row(r) for r in rows]

    def clear_messages(self, chat_id: str) -> int:
        """Soft-delete the active conversation. Returns rows cleared."""
        count = self.db.execute(
            "UPDATE messages SET cleared_at = ? WHERE chat_id = ? AND cleared_at IS NULL",
            (_iso(utc_now()), chat_id),
        )
        logger.info("Cleared %d message(s) in chat %s", count, chat_id)
        return count

    def count_messages(self, chat_id: str) -> int:
        row = self.db.query_one(
            "SELECT COUNT(*) AS n FROM messages WHERE chat_id = ? AND cleared_at IS NULL",
            (chat_id,),
        )
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Translation cache
    # ------------------------------------------------------------------

    def get_translation(self, content_hash: str, model_id: str) -> Optional[str]:
        row = self.db.query_one(
            "SELECT translation FROM content_translations "
            "WHERE content_hash = ? AND model_id = ?",
            (content_hash, model_id),
        )
        return row["translation"] if row else None

    def save_translation(self, content_hash: str, model_id: str, translation: str) -> None:
        """Insert once; an existing entry for the pair is left untouched."""
        self.db.execute(
            "INSERT INTO content_translations (content_hash, model_id, translation, created_at) "
            "VALUES (?, ?, ?, ?) ON CONFLICT(content_hash, model_id) DO NOTHING",
            (content_hash, model_id, translation, _iso(utc_now())),
        )
