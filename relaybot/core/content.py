"""
Conversation content model.

Messages are stored as JSON in ``messages.message_data``; these dataclasses
are the in-memory form. Every block and message round-trips through
``to_dict`` / ``block_from_dict`` / ``message_from_dict``.

Block types: text, image, audio, video (base64 ``data`` + ``mime_type``),
quote (nested blocks), tool_call (id, name, JSON arguments).
Message roles: user, assistant, tool. A tool message carries the result of
one tool call and references its id.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

MEDIA_TYPES = ("image", "audio", "video")


# ── Content blocks ─────────────────────────────────────────────────────


@dataclass
class TextBlock:
    text: str
    type: str = field(default="text", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class MediaBlock:
    """Base64 encoded media. ``type`` is image, audio or video."""

    data: str
    mime_type: str
    type: str = field(default="", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data, "mime_type": self.mime_type}


@dataclass
class ImageBlock(MediaBlock):
    type: str = field(default="image", init=False)


@dataclass
class AudioBlock(MediaBlock):
    type: str = field(default="audio", init=False)


@dataclass
class VideoBlock(MediaBlock):
    type: str = field(default="video", init=False)


@dataclass
class QuoteBlock:
    """A quoted message: the blocks of the message being replied to."""

    content: List["Block"]
    sender_id: Optional[str] = None
    type: str = field(default="quote", init=False)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": "quote", "content": [b.to_dict() for b in self.content]}
        if self.sender_id:
            out["sender_id"] = self.sender_id
        return out


@dataclass
class ToolCallBlock:
    tool_id: str
    name: str
    arguments: str = "{}"
    type: str = field(default="tool_call", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "tool_call",
            "tool_id": self.tool_id,
            "name": self.name,
            "arguments": self.arguments,
        }


Block = Union[TextBlock, ImageBlock, AudioBlock, VideoBlock, QuoteBlock, ToolCallBlock]

_MEDIA_CLASSES = {"image": ImageBlock, "audio": AudioBlock, "video": VideoBlock}


def block_from_dict(d: Dict[str, Any]) -> Optional[Block]:
    """Parse one stored block. Unknown types are dropped with a debug log."""
    kind = d.get("type")
    if kind == "text":
        return TextBlock(d.get("text", ""))
    if kind in _MEDIA_CLASSES:
        return _MEDIA_CLASSES[kind](d.get("data", ""), d.get("mime_type", ""))
    if kind == "quote":
        return QuoteBlock(blocks_from_list(d.get("content", [])), d.get("sender_id"))
    if kind == "tool_call":
        return ToolCallBlock(d.get("tool_id", ""), d.get("name", ""), d.get("arguments", "{}"))
    logger.debug("Skipping unknown content block type %r", kind)
    return None


def blocks_from_list(items: List[Dict[str, Any]]) -> List[Block]:
    out = []
    for item in items or []:
        block = block_from_dict(item)
        if block is not None:
            out.append(block)
    return out


# ── Messages ───────────────────────────────────────────────────────────


@dataclass
class UserMessage:
    content: List[Block]
    role: str = field(default="user", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"role": "user", "content": [b.to_dict() for b in self.content]}


@dataclass
class AssistantMessage:
    content: List[Block]
    role: str = field(default="assistant", init=False)

    @property
    def tool_calls(self) -> List[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    def to_dict(self) -> Dict[str, Any]:
        return {"role": "assistant", "content": [b.to_dict() for b in self.content]}


@dataclass
class ToolMessage:
    """Result of one tool call. ``content`` holds text blocks."""

    tool_id: str
    content: List[Block]
    is_error: bool = False
    role: str = field(default="tool", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": "tool",
            "tool_id": self.tool_id,
            "is_error": self.is_error,
            "content": [b.to_dict() for b in self.content],
        }


@dataclass
class UnknownMessage:
    """A stored message whose role this version does not understand."""

    role: str
    raw: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


Message = Union[UserMessage, AssistantMessage, ToolMessage, UnknownMessage]


def message_from_dict(d: Dict[str, Any]) -> Message:
    role = d.get("role", "")
    content = blocks_from_list(d.get("content", []))
    if role == "user":
        return UserMessage(content)
    if role == "assistant":
        return AssistantMessage(content)
    if role == "tool":
        return ToolMessage(d.get("tool_id", ""), content, bool(d.get("is_error", False)))
    return UnknownMessage(role, d)


def text_of(blocks: List[Block], sep: str = "\n") -> str:
    """Join the text blocks of a content list (quotes excluded)."""
    return sep.join(b.text for b in blocks if isinstance(b, TextBlock))
