"""
Response gate and context formatting.

Pure functions between the conversation store and the completion service:
whether to answer an inbound message at all, how to render the user's text
for the model, how to turn `!command` tokens into action parameters, and how
to convert stored rows into chat-completions wire messages.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from relaybot.core.content import (
    AssistantMessage,
    AudioBlock,
    Block,
    ImageBlock,
    QuoteBlock,
    TextBlock,
    ToolCallBlock,
    ToolMessage,
    UserMessage,
    VideoBlock,
)
from relaybot.utils.audio import audio_for_wire

logger = logging.getLogger(__name__)

GROUP_PROMPT_SUFFIX = "\n\nYou are in a group chat"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"

_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


# ── Tool specs ─────────────────────────────────────────────────────────


def actions_to_openai_format(actions: Iterable[Any]) -> List[Dict[str, Any]]:
    """Convert action descriptors to chat-completions function tools."""
    return [
        {
            "type": "function",
            "function": {
                "name": action.name,
                "description": action.description,
                "parameters": action.parameters,
            },
        }
        for action in actions
    ]


# ── Response gate ──────────────────────────────────────────────────────


def should_respond(
    chat: Optional[Any],
    is_group: bool,
    content: Sequence[Block],
    self_ids: Sequence[str],
    quoted_sender_id: Optional[str] = None,
) -> bool:
    """Decide whether the bot answers an inbound message.

    Args:
        chat: Stored chat settings (``None`` when the chat is unknown).
        is_group: True for group conversations.
        content: Inbound content blocks.
        self_ids: Every identity the bot is known by in this transport.
        quoted_sender_id: Sender of the message being replied to, if any.
    """
    if chat is None or not chat.is_enabled:
        return False
    if not is_group:
        return True
    if chat.respond_on_any:
        return True

    if chat.respond_on_mention:
        tokens = [f"@{sid}".lower() for sid in self_ids if sid]
        for block in content:
            if isinstance(block, TextBlock):
                text = block.text.lower()
                if any(tok in text for tok in tokens):
                    return True

    if chat.respond_on_reply and quoted_sender_id:
        if quoted_sender_id in self_ids:
            return True

    return False


# ── Inbound text ───────────────────────────────────────────────────────


def format_timestamp(dt: datetime) -> str:
    return dt.strftime(TIMESTAMP_FORMAT)


def strip_self_mention(text: str, self_ids: Sequence[str]) -> str:
    """Remove one leading ``@<self id>`` token and the spaces after it."""
    ids = [re.escape(sid) for sid in self_ids if sid]
    if not ids:
        return text
    # Longest first so "@bot123" is not cut to "@bot" + "123".
    ids.sort(key=len, reverse=True)
    pattern = re.compile(r"^@(?:%s) *" % "|".join(ids), re.IGNORECASE)
    return pattern.sub("", text, count=1)


def format_user_message(
    block: TextBlock,
    is_group: bool,
    sender_name: str,
    time: datetime,
    self_ids: Sequence[str],
) -> Tuple[str, str]:
    """Return ``(formatted_text, system_prompt_suffix)`` for the first text block."""
    stamp = format_timestamp(time)
    if is_group:
        cleaned = strip_self_mention(block.text, self_ids)
        return f"[{stamp}] {sender_name}: {cleaned}", GROUP_PROMPT_SUFFIX
    return f"[{stamp}] {block.text}", ""


# ── Command arguments ──────────────────────────────────────────────────


def _coerce(value: str, schema: Dict[str, Any]) -> Any:
    kind = schema.get("type")
    try:
        if kind == "integer":
            return int(value)
        if kind == "number":
            return float(value)
    except ValueError:
        return value
    if kind == "boolean":
        low = value.lower()
        if low in ("true", "yes", "on", "1"):
            return True
        if low in ("false", "no", "off", "0"):
            return False
    return value


def parse_command_args(args: Sequence[str], parameters: Dict[str, Any]) -> Dict[str, Any]:
    """Map positional ``!command`` tokens onto declared parameters in order.

    A missing token falls back to the property's ``default``; with no
    default the key is omitted. Surplus tokens are joined onto the last
    property so free text (a prompt, a query) survives whitespace splitting.
    """
    properties = list((parameters or {}).get("properties", {}).items())
    params: Dict[str, Any] = {}
    for i, (name, schema) in enumerate(properties):
        if i < len(args):
            if i == len(properties) - 1 and len(args) > len(properties):
                raw = " ".join(args[i:])
            else:
                raw = args[i]
            params[name] = _coerce(raw, schema or {})
        elif "default" in (schema or {}):
            params[name] = schema["default"]
    return params


# ── Wire format ────────────────────────────────────────────────────────


def shorten_tool_id(tool_id: Optional[str]) -> str:
    """Short display form of a tool-call id."""
    if not tool_id:
        return "unknown"
    return tool_id[6:12] or tool_id[:6]


def _wire_name(sender_id: str) -> Optional[str]:
    name = _NAME_UNSAFE.sub("_", sender_id or "").strip("_")[:64]
    return name or None


def _data_url(block: Any) -> str:
    return f"data:{block.mime_type};base64,{block.data}"


def _quote_parts(blocks: Sequence[Block]) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            quoted = block.text.strip().replace("\n", "\n> ")
            parts.append({"type": "text", "text": f"> {quoted}"})
        elif isinstance(block, ImageBlock):
            parts.append({"type": "image_url", "image_url": {"url": _data_url(block)}})
        elif isinstance(block, QuoteBlock):
            parts.extend(_quote_parts(block.content))
    return parts


def format_user_content(message: UserMessage) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            parts.append({"type": "text", "text": block.text})
        elif isinstance(block, QuoteBlock):
            parts.extend(_quote_parts(block.content))
        elif isinstance(block, ImageBlock):
            parts.append({"type": "image_url", "image_url": {"url": _data_url(block)}})
        elif isinstance(block, AudioBlock):
            data, fmt = audio_for_wire(block.data, block.mime_type)
            parts.append({"type": "input_audio", "input_audio": {"data": data, "format": fmt}})
        elif isinstance(block, VideoBlock):
            parts.append({"type": "video_url", "video_url": {"url": _data_url(block)}})
    return parts


def format_assistant_content(message: AssistantMessage) -> Dict[str, Any]:
    texts = [b.text for b in message.content if isinstance(b, TextBlock)]
    tool_calls = [
        {
            "type": "function",
            "id": b.tool_id,
            "function": {"name": b.name, "arguments": b.arguments},
        }
        for b in message.content
        if isinstance(b, ToolCallBlock)
    ]
    out: Dict[str, Any] = {
        "role": "assistant",
        "content": "\n".join(texts) if texts else None,
    }
    if tool_calls:
        out["tool_calls"] = tool_calls
    return out


def format_tool_content(message: ToolMessage) -> List[Dict[str, Any]]:
    return [
        {"role": "tool", "tool_call_id": message.tool_id, "content": b.text}
        for b in message.content
        if isinstance(b, TextBlock)
    ]


def format_messages_for_openai(rows: Sequence[Any]) -> List[Dict[str, Any]]:
    """Convert newest-first stored rows into chronological wire messages."""
    chronological = list(reversed(rows))

    # A tool result without its preceding call is rejected by the API.
    while chronological and isinstance(chronological[0].message_data, ToolMessage):
        chronological.pop(0)

    formatted: List[Dict[str, Any]] = []
    for row in chronological:
        msg = row.message_data
        if isinstance(msg, UserMessage):
            wire: Dict[str, Any] = {"role": "user", "content": format_user_content(msg)}
            name = _wire_name(row.sender_ids[0]) if row.sender_ids else None
            if name:
                wire["name"] = name
            formatted.append(wire)
        elif isinstance(msg, AssistantMessage):
            formatted.append(format_assistant_content(msg))
        elif isinstance(msg, ToolMessage):
            formatted.extend(format_tool_content(msg))
        else:
            logger.debug("Ignoring message %s with role %r", row.message_id, msg.role)
    return formatted


def tool_result_text(result: Any) -> str:
    """Render an action result as the string sent to the model and the chat."""
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)
