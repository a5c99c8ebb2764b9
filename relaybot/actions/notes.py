"""
Chat notes and text summaries.

Notes live in the chat database so every notes action in a chat sees the
same list. Summaries are cached in the summarize action's private database.
"""

import hashlib
from datetime import datetime, timezone
from typing import Any, Dict

from relaybot.core.actions import ActionContext, ActionDescriptor, ActionPermissions
from relaybot.memory.database import Database

_NOTES_SCHEMA = """
CREATE TABLE IF NOT EXISTS notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT NOT NULL,
    author TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
)
"""

_SUMMARY_SCHEMA = """
CREATE TABLE IF NOT EXISTS summaries (
    text_hash TEXT PRIMARY KEY,
    summary TEXT NOT NULL
)
"""

SUMMARY_PROMPT = "Summarize the following text in at most three sentences:\n\n"


def _notes_db(ctx: ActionContext) -> Database:
    db = ctx.chat_db
    db.execute(_NOTES_SCHEMA)
    return db


def notes(ctx: ActionContext, params: Dict[str, Any]) -> str:
    """add <text> | list | delete <id>"""
    op = str(params.get("operation") or "list").strip().lower()
    arg = str(params.get("text") or "").strip()
    db = _notes_db(ctx)

    if op == "add":
        if not arg:
            raise ValueError("Note text cannot be empty")
        author = ctx.sender_ids[0] if ctx.sender_ids else ""
        note_id = db.insert(
            "INSERT INTO notes (text, author, created_at) VALUES (?, ?, ?)",
            (arg, author, datetime.now(timezone.utc).isoformat()),
        )
        ctx.log(f"Saved note {note_id}")
        return f"📌 Note {note_id} saved."

    if op == "list":
        rows = db.query("SELECT id, text FROM notes ORDER BY id")
        if not rows:
            return "No notes yet."
        return "*Notes:*\n" + "\n".join(f"{r['id']}. {r['text']}" for r in rows)

    if op == "delete":
        try:
            note_id = int(arg)
        except ValueError as e:
            raise ValueError(f"Note id must be a number, got {arg!r}") from e
        if not db.execute("DELETE FROM notes WHERE id = ?", (note_id,)):
            return f"Note {note_id} not found."
        return f"Note {note_id} deleted."

    raise ValueError(f"Unknown operation {op!r}; use add, list or delete")


def clear_notes(ctx: ActionContext, params: Dict[str, Any]) -> str:
    count = _notes_db(ctx).execute("DELETE FROM notes")
    return f"Deleted {count} note(s)."


def summarize_text(ctx: ActionContext, params: Dict[str, Any]) -> str:
    text = str(params.get("text") or "").strip()
    if not text:
        raise ValueError("Nothing to summarize")
    key = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
    ctx.db.execute(_SUMMARY_SCHEMA)
    row = ctx.db.query_one("SELECT summary FROM summaries WHERE text_hash = ?", (key,))
    if row:
        return row["summary"]
    summary = ctx.call_llm(SUMMARY_PROMPT + text).strip()
    if not summary:
        raise ValueError("The model returned an empty summary")
    ctx.db.execute("INSERT OR IGNORE INTO summaries (text_hash, summary) VALUES (?, ?)", (key, summary))
    return summary


ACTIONS = [
    ActionDescriptor(
        name="notes",
        command="notes",
        description="Keep shared notes for this chat: add a note, list notes, or delete one by id",
        fn=notes,
        parameters={
            "type": "object",
            "properties": {
                "operation": {"type": "string", "enum": ["add", "list", "delete"],
                              "description": "What to do", "default": "list"},
                "text": {"type": "string", "description": "Note text (add) or note id (delete)"},
            },
            "required": ["operation"],
        },
        permissions=ActionPermissions(auto_execute=True, use_chat_db=True),
    ),
    ActionDescriptor(
        name="clear_notes",
        command="clear notes",
        description="Delete every note in this chat",
        fn=clear_notes,
        permissions=ActionPermissions(use_chat_db=True),
    ),
    ActionDescriptor(
        name="summarize_text",
        command="summarize",
        description="Summarize a piece of text in a few sentences",
        fn=summarize_text,
        parameters={
            "type": "object",
            "properties": {"text": {"type": "string", "description": "Text to summarize"}},
            "required": ["text"],
        },
        permissions=ActionPermissions(auto_execute=True, use_llm=True),
    ),
]
