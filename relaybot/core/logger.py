"""
Structured action log for relaybot: one JSONL record per action execution.
Auto-rotates by UTC date under logs/actions/YYYY-MM-DD.jsonl.
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from relaybot.utils.paths import logs_dir

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActionLogger:
    """Append-only JSONL action log, safe to share between turn threads."""

    def __init__(self, log_dir: Optional[str] = None) -> None:
        self._actions_dir = log_dir or os.path.join(logs_dir(), "actions")
        os.makedirs(self._actions_dir, exist_ok=True)
        self._current_date: Optional[str] = None
        self._current_file: Optional[Any] = None
        self._lock = threading.Lock()

    @property
    def actions_dir(self) -> str:
        return self._actions_dir

    def _action_file(self) -> Any:
        """Return open file for today's action log. Rotates by date."""
        today = _utc_now().strftime("%Y-%m-%d")
        if self._current_date != today:
            if self._current_file is not None:
                self._current_file.close()
                self._current_file = None
            self._current_date = today
        if self._current_file is None:
            path = os.path.join(self._actions_dir, f"{today}.jsonl")
            self._current_file = open(path, "a", encoding="utf-8")
        return self._current_file

    def log_action(
        self,
        *,
        action: str,
        chat_id: str,
        sender_ids: Optional[List[str]] = None,
        parameters: Optional[Dict[str, Any]] = None,
        tool_call_id: Optional[str] = None,
        outcome: str = "success",
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        **extra: Any,
    ) -> None:
        """Append one record. ``outcome`` is success, cancelled, denied or error."""
        entry = {
            "timestamp": _utc_now().strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "action": action,
            "chat_id": chat_id,
            "sender_ids": sender_ids or [],
            "parameters": parameters if parameters is not None else {},
            "tool_call_id": tool_call_id,
            "outcome": outcome,
            "duration_ms": duration_ms,
            "error": error,
        }
        entry.update(extra)
        entry = {k: v for k, v in entry.items() if v is not None}
        with self._lock:
            try:
                f = self._action_file()
                f.write(json.dumps(entry, default=str) + "\n")
                f.flush()
            except OSError as e:
                logger.error("Failed to write action log: %s", e)

    def close(self) -> None:
        """Close the current log file."""
        with self._lock:
            if self._current_file is not None:
                self._current_file.close()
                self._current_file = None
            self._current_date = None
