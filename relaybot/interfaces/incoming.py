"""
Transport-neutral inbound message.

A transport adapter fills one of these per received message. The callbacks
are synchronous and may be called from the worker thread running the turn;
adapters for async transports marshal them onto their event loop.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from relaybot.core.content import Block


def _noop(*_args: Any, **_kwargs: Any) -> None:
    return None


@dataclass
class IncomingMessage:
    chat_id: str
    sender_ids: List[str]
    content: List[Block]
    is_group: bool = False
    sender_name: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    self_ids: List[str] = field(default_factory=list)
    self_name: str = "Assistant"
    quoted_sender_id: Optional[str] = None

    # Capability callbacks
    get_admin_status: Callable[[], bool] = lambda: False
    send_message: Callable[[str], Any] = _noop
    reply_to_message: Callable[[str], Any] = _noop
    react_to_message: Callable[[str], Any] = _noop
    send_poll: Callable[[str, List[str]], Any] = _noop
    # Returns True on approval; may raise TimeoutError when unanswered.
    confirm: Callable[[str], bool] = lambda _prompt: False
