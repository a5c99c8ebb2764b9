"""
Conversation actions: clear, recall older history, show the transcript,
show chat info, and search the model catalog.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List

from relaybot.core.actions import ActionContext, ActionDescriptor, ActionPermissions, ActionSignal
from relaybot.core.content import (
    QuoteBlock,
    TextBlock,
    ToolCallBlock,
    ToolMessage,
    UnknownMessage,
)
from relaybot.memory.store import MessageRow

ROLE_ICONS = {"user": "👤", "assistant": "🤖", "tool": "🔧"}
ROLE_LABELS = {"user": "User", "assistant": "Bot"}
TOKENS_PER_MILLION = 1_000_000


# ── Clear ──────────────────────────────────────────────────────────────


def clear_conversation(ctx: ActionContext, params: Dict[str, Any]) -> str:
    ctx.store.clear_messages(ctx.chat_id)
    ctx.reply("🗑️ Conversation history cleared!")
    return "Conversation history cleared."


# ── Recall ─────────────────────────────────────────────────────────────


def _parse_since(raw: str) -> datetime:
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError as e:
        raise ValueError(f"Invalid timestamp {raw!r}; use ISO 8601 like 2026-02-19T08:00:00Z") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _recall_line(row: MessageRow) -> str:
    msg = row.message_data
    ts = row.timestamp.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")
    if isinstance(msg, UnknownMessage):
        return f"[{ts}] {json.dumps(msg.raw, ensure_ascii=False)}"
    parts: List[str] = []
    for block in msg.content:
        if isinstance(block, TextBlock):
            parts.append(block.text)
        elif isinstance(block, ToolCallBlock):
            parts.append(f"[called {block.name}({block.arguments})]")
    sender = f" ({','.join(row.sender_ids)})" if row.sender_ids else ""
    return f"[{ts}] [{msg.role}]{sender}: {' | '.join(parts)}"


def recall_history(ctx: ActionContext, params: Dict[str, Any]) -> Any:
    since_raw = str(params.get("since") or "")
    if not since_raw:
        raise ValueError("since is required")
    limit = int(params.get("limit") or 50)
    rows = ctx.store.get_messages_since(ctx.chat_id, _parse_since(since_raw), limit)
    if not rows:
        # Nothing new to reason about; let the turn end here.
        return ActionSignal("No messages found in that time range.", auto_continue=False)
    lines = "\n".join(_recall_line(r) for r in rows)
    return f"Recalled {len(rows)} messages since {since_raw}:\n\n{lines}"


# ── Transcript ─────────────────────────────────────────────────────────


def _transcript_entry(row: MessageRow) -> str:
    msg = row.message_data
    icon = ROLE_ICONS.get(msg.role, "❓")
    parts: List[str] = []
    for block in getattr(msg, "content", []):
        if isinstance(block, TextBlock):
            parts.append(block.text)
        elif isinstance(block, ToolCallBlock):
            try:
                args = json.loads(block.arguments or "{}")
                shown = "\n".join(f"  {k}: {v}" for k, v in args.items())
            except (json.JSONDecodeError, AttributeError):
                shown = f"  {block.arguments}"
            parts.append(f"*{block.name}*\n{shown}".strip())
        elif isinstance(block, QuoteBlock):
            quoted = "\n".join(b.text for b in block.content if isinstance(b, TextBlock))
            if quoted:
                parts.append("> " + quoted.replace("\n", "\n> "))
    if isinstance(msg, ToolMessage):
        body = f"{icon} *Tool result:*\n" + "\n".join(parts)
    else:
        label = ROLE_LABELS.get(msg.role, msg.role)
        body = f"{icon} *{label}:*\n" + "\n".join(parts)
    stamp = row.timestamp.astimezone(timezone.utc).strftime("%m/%d %H:%M")
    return f"{stamp}\n{body}"


def show_conversation(ctx: ActionContext, params: Dict[str, Any]) -> str:
    limit = int(params.get("limit") or 20)
    rows = ctx.store.get_messages(ctx.chat_id, limit)
    if not rows:
        return "No conversation history found for this chat."
    entries = [_transcript_entry(r) for r in reversed(rows)]
    return f"*Conversation history* ({len(rows)} messages):\n\n" + "\n\n---\n\n".join(entries)


# ── Info ───────────────────────────────────────────────────────────────


def show_info(ctx: ActionContext, params: Dict[str, Any]) -> str:
    chat = ctx.store.get_chat(ctx.chat_id)
    if chat is None:
        raise ValueError(f"Chat {ctx.chat_id} does not exist.")
    settings = ctx.service("settings")
    modes = [name for name, on in (
        ("any", chat.respond_on_any),
        ("mention", chat.respond_on_mention),
        ("reply", chat.respond_on_reply),
    ) if on]
    lines = [
        "Chat Information:",
        f"- Chat ID: {chat.chat_id}",
        f"- status: {'enabled' if chat.is_enabled else 'disabled'}",
        f"- model: {chat.model or settings.default_model}",
        f"- responds on: {', '.join(modes) or 'nothing (groups)'}",
        f"- messages in context: {ctx.store.count_messages(chat.chat_id)}",
    ]
    if chat.is_debug():
        lines.append(f"- debug until: {chat.debug_until.strftime('%Y-%m-%d %H:%M')} UTC")
    if chat.content_models:
        pairs = ", ".join(f"{k}={v}" for k, v in sorted(chat.content_models.items()))
        lines.append(f"- content models: {pairs}")
    return "\n".join(lines)


# ── Model search ───────────────────────────────────────────────────────


def _price(model: Dict[str, Any], key: str) -> float:
    try:
        return float((model.get("pricing") or {}).get(key, 0)) * TOKENS_PER_MILLION
    except (TypeError, ValueError):
        return 0.0


def search_models(ctx: ActionContext, params: Dict[str, Any]) -> str:
    patterns = [p.strip().lower() for p in str(params.get("providers") or "").split(",") if p.strip()]
    if not patterns:
        raise ValueError("providers is required, e.g. 'claude,gpt-4.1'")
    ctx.log(f"Searching models for: {', '.join(patterns)}")

    data = ctx.service("models").get_models()
    if not data:
        return "No cached models available. The cache may not have been populated yet, try again shortly."

    found = [m for m in data if any(p in str(m.get("id", "")).lower() for p in patterns)]
    sort_by = params.get("sortBy") or "input_price"
    if sort_by == "output_price":
        found.sort(key=lambda m: _price(m, "completion"))
    elif sort_by == "context":
        found.sort(key=lambda m: m.get("context_length") or 0, reverse=True)
    else:
        found.sort(key=lambda m: _price(m, "prompt"))
    ctx.log(f"Found {len(found)} models")

    if not found:
        return f"No models match {', '.join(patterns)}."
    lines = ["*IN* | *OUT* | *CTX* | *MODEL* | *ID*", "-" * 60]
    for m in found:
        ctx_k = f"{round((m.get('context_length') or 0) / 1000)}k"
        lines.append(
            f"• ${_price(m, 'prompt'):.2f} | ${_price(m, 'completion'):.2f} | {ctx_k} | "
            f"*{m.get('name', m['id'])}* | `{m['id']}`"
        )
    return "\n".join(lines)


# ── Descriptors ────────────────────────────────────────────────────────

_EMPTY = {"type": "object", "properties": {}, "required": []}

ACTIONS = [
    ActionDescriptor(
        name="clear_conversation",
        command="clear",
        description="Clear the conversation history for the current chat",
        fn=clear_conversation,
        permissions=ActionPermissions(
            auto_execute=True, require_admin=True, silent=True, use_root_db=True,
        ),
    ),
    ActionDescriptor(
        name="recall_history",
        description=(
            "Fetch older conversation messages beyond the current context window. Call this "
            "when a user asks about something that happened earlier in the chat and you don't "
            "have enough context. Messages are returned oldest-first."
        ),
        fn=recall_history,
        parameters={
            "type": "object",
            "properties": {
                "since": {"type": "string",
                          "description": "ISO 8601 timestamp to start from (e.g. '2026-02-19T08:00:00Z')"},
                "limit": {"type": "integer",
                          "description": "Maximum number of messages to retrieve (default: 50)"},
            },
            "required": ["since"],
        },
        permissions=ActionPermissions(
            auto_execute=True, auto_continue=True, silent=True, use_root_db=True,
        ),
    ),
    ActionDescriptor(
        name="show_conversation",
        command="history",
        description="Show the conversation history for the current chat in a readable format",
        fn=show_conversation,
        parameters={
            "type": "object",
            "properties": {
                "limit": {"type": "integer",
                          "description": "Maximum number of messages to show (default: 20)"},
            },
            "required": [],
        },
        permissions=ActionPermissions(auto_execute=True, use_root_db=True),
    ),
    ActionDescriptor(
        name="show_info",
        command="info",
        description="Show information about the current chat",
        fn=show_info,
        parameters=_EMPTY,
        permissions=ActionPermissions(auto_execute=True, use_root_db=True),
    ),
    ActionDescriptor(
        name="search_models",
        command="search models",
        description="Search LLM models in the cached model list with pricing and context size",
        fn=search_models,
        parameters={
            "type": "object",
            "properties": {
                "providers": {"type": "string",
                              "description": "Comma-separated id fragments to match (e.g. 'claude,gpt-4.1')"},
                "sortBy": {"type": "string",
                           "description": "Sort by input_price, output_price or context (default: input_price)"},
            },
            "required": ["providers"],
        },
        permissions=ActionPermissions(auto_execute=True),
    ),
]
