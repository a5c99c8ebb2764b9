"""
Centralised configuration loader for relaybot.

Loads config/relaybot.yaml once, overlays environment variables (read from
``.env`` via python-dotenv when present), and exposes the result through
accessor functions so that no module hard-codes thresholds or model ids.

Usage:
    from relaybot.utils.config import get_llm_config, get_settings

Environment overrides:
    LLM_API_KEY, BASE_URL, MODEL, CONTENT_MODEL, SYSTEM_PROMPT,
    MASTER_IDS (comma separated; MASTER_ID accepted too).
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

import yaml
from dotenv import load_dotenv

from relaybot.utils.paths import base_path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal cache
# ---------------------------------------------------------------------------
_config_cache: Optional[Dict[str, Any]] = None
_env_loaded = False


def _load_yaml(filename: str) -> Dict[str, Any]:
    """Load a YAML file from config/ and return as dict (empty on failure)."""
    path = os.path.join(base_path(), "config", filename)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.debug("Could not load %s: %s", path, e)
        return {}


def load_env() -> None:
    """Load ``.env`` from the project root once. Existing variables win."""
    global _env_loaded
    if _env_loaded:
        return
    _env_loaded = True
    env_file = os.path.join(base_path(), ".env")
    if os.path.isfile(env_file):
        load_dotenv(env_file, override=False)
        logger.debug("Loaded environment from %s", env_file)


def _config() -> Dict[str, Any]:
    """Return cached relaybot.yaml contents."""
    global _config_cache
    if _config_cache is None:
        load_env()
        _config_cache = _load_yaml("relaybot.yaml")
    return _config_cache


def reload() -> None:
    """Force re-read of the config file and ``.env`` (useful after editing)."""
    global _config_cache, _env_loaded
    _config_cache = None
    _env_loaded = False


def _section(name: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
    section = _config().get(name, {}) or {}
    merged = dict(defaults)
    merged.update({k: v for k, v in section.items() if v is not None})
    return merged


def _env(name: str) -> Optional[str]:
    value = os.environ.get(name, "").strip()
    return value or None


# ---------------------------------------------------------------------------
# LLM / completion service
# ---------------------------------------------------------------------------

_LLM_DEFAULTS: Dict[str, Any] = {
    "base_url": "https://openrouter.ai/api/v1",
    "model": "openai/gpt-4.1",
    "content_model": None,
    "timeout_sec": 60,
    "models_url": "https://openrouter.ai/api/v1/models",
    "models_refresh_hours": 24,
}


def get_llm_config() -> Dict[str, Any]:
    """Return the ``llm`` section with defaults and environment overrides."""
    merged = _section("llm", _LLM_DEFAULTS)
    merged["api_key"] = _env("LLM_API_KEY")
    merged["base_url"] = _env("BASE_URL") or merged["base_url"]
    merged["model"] = _env("MODEL") or merged["model"]
    merged["content_model"] = _env("CONTENT_MODEL") or merged["content_model"]
    return merged


# ---------------------------------------------------------------------------
# Chat behaviour
# ---------------------------------------------------------------------------

_CHAT_DEFAULTS: Dict[str, Any] = {
    "system_prompt": "You are a helpful assistant in a chat. Keep answers short and friendly.",
    "history_limit": 50,
    "max_depth": 10,
}


def get_chat_config() -> Dict[str, Any]:
    """Return the ``chat`` section of relaybot.yaml with defaults."""
    merged = _section("chat", _CHAT_DEFAULTS)
    merged["system_prompt"] = _env("SYSTEM_PROMPT") or merged["system_prompt"]
    merged["history_limit"] = int(merged["history_limit"])
    merged["max_depth"] = int(merged["max_depth"])
    return merged


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------

def parse_id_list(raw: Any) -> List[str]:
    """Accept a YAML list or a comma separated string of sender ids."""
    if not raw:
        return []
    if isinstance(raw, str):
        items = raw.split(",")
    else:
        items = [str(x) for x in raw]
    return [i.strip() for i in items if i and i.strip()]


def get_master_ids() -> FrozenSet[str]:
    """Sender ids with master permissions (env replaces the YAML list)."""
    env = _env("MASTER_IDS") or _env("MASTER_ID")
    if env is not None:
        return frozenset(parse_id_list(env))
    section = _config().get("access", {}) or {}
    return frozenset(parse_id_list(section.get("master_ids")))


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

_TRANSPORT_DEFAULTS: Dict[str, Any] = {
    "confirm_timeout_sec": 120,
    "max_message_len": 1900,
}


def get_transport_config() -> Dict[str, Any]:
    """Return the ``transport`` section of relaybot.yaml with defaults."""
    merged = _section("transport", _TRANSPORT_DEFAULTS)
    merged["confirm_timeout_sec"] = float(merged["confirm_timeout_sec"])
    merged["max_message_len"] = int(merged["max_message_len"])
    return merged


# ---------------------------------------------------------------------------
# Aggregated settings for injection
# ---------------------------------------------------------------------------

@dataclass
class BotSettings:
    """Values the message handler needs, resolved once at startup."""

    default_model: str = _LLM_DEFAULTS["model"]
    content_model: Optional[str] = None
    system_prompt: str = _CHAT_DEFAULTS["system_prompt"]
    history_limit: int = 50
    max_depth: int = 10
    master_ids: FrozenSet[str] = field(default_factory=frozenset)


def get_settings() -> BotSettings:
    """Build :class:`BotSettings` from YAML and environment."""
    llm = get_llm_config()
    chat = get_chat_config()
    return BotSettings(
        default_model=llm["model"],
        content_model=llm["content_model"],
        system_prompt=chat["system_prompt"],
        history_limit=chat["history_limit"],
        max_depth=chat["max_depth"],
        master_ids=get_master_ids(),
    )
