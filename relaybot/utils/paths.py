"""
Centralised path helpers for relaybot.

* ``base_path()``     – project root (directory containing ``config/``).
* ``data_dir()``      – ``data/`` directory (created lazily).
* ``root_db_path()``  – process-wide SQLite database at ``data/relaybot.db``.
* ``chat_db_path()``  – per-chat database under ``data/chats/<chat>/chat.db``.
* ``action_db_path()``– per-chat, per-action database under the chat folder.
"""

import os
from pathlib import Path
from typing import Optional
from urllib.parse import quote

# ---------------------------------------------------------------------------
# Project root
# ---------------------------------------------------------------------------

_cached_base: Optional[str] = None


def base_path() -> str:
    """Return the project root (directory containing ``config/``).

    Resolution order:
    1. ``RELAYBOT_ROOT`` environment variable (normalised).
    2. Walk up from *this* file (up to 6 levels) looking for ``config/``.
    3. Current working directory as last resort.

    The result is cached after the first call.
    """
    global _cached_base
    if _cached_base is not None:
        return _cached_base

    env = os.environ.get("RELAYBOT_ROOT")
    if env:
        _cached_base = os.path.normpath(env)
        return _cached_base

    cur = Path(__file__).resolve().parent
    for _ in range(6):
        if (cur / "config").is_dir():
            _cached_base = str(cur)
            return _cached_base
        cur = cur.parent

    _cached_base = os.getcwd()
    return _cached_base


def reset_base_path() -> None:
    """Drop the cached root (tests point ``RELAYBOT_ROOT`` somewhere else)."""
    global _cached_base
    _cached_base = None


# ---------------------------------------------------------------------------
# Common data paths
# ---------------------------------------------------------------------------

def safe_segment(value: str) -> str:
    """Make an identifier usable as a single directory name.

    Percent-encoding keeps the mapping one-to-one, so distinct ids never
    share a directory.
    """
    encoded = quote(str(value), safe="@")
    if encoded in ("", ".", ".."):
        return encoded.replace(".", "%2E") or "%"
    return encoded


def data_dir(subdir: str = "") -> str:
    """Return (and ensure existence of) ``data/<subdir>``."""
    d = os.path.join(base_path(), "data", subdir) if subdir else os.path.join(base_path(), "data")
    os.makedirs(d, exist_ok=True)
    return d


def root_db_path() -> str:
    """Return path to the process-wide SQLite database (``data/relaybot.db``)."""
    return os.path.join(data_dir(), "relaybot.db")


def chat_db_path(chat_id: str, root: Optional[str] = None) -> str:
    """Path of the database shared by all actions of one chat.

    Directories are not created here; the handle creates them on first use.
    """
    root = root or os.path.join(base_path(), "data")
    return os.path.join(root, "chats", safe_segment(chat_id), "chat.db")


def action_db_path(chat_id: str, action_name: str, root: Optional[str] = None) -> str:
    """Path of the database private to one action inside one chat."""
    root = root or os.path.join(base_path(), "data")
    return os.path.join(
        root, "chats", safe_segment(chat_id), "actions", f"{safe_segment(action_name)}.db"
    )


def logs_dir() -> str:
    """Return (and ensure existence of) ``logs/``."""
    d = os.path.join(base_path(), "logs")
    os.makedirs(d, exist_ok=True)
    return d
