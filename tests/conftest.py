"""
Shared fixtures: an isolated project root, an in-memory conversation store,
a scripted completion client, a fake model catalog and a recording transport.
"""

import copy
import os
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

# Ensure project root is on the path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from relaybot.core.content import TextBlock
from relaybot.interfaces.incoming import IncomingMessage
from relaybot.memory.database import Database
from relaybot.memory.store import ConversationStore
from relaybot.models.llm_client import Completion, ToolCall
from relaybot.utils import config, paths
from relaybot.utils.config import BotSettings

BOT_ID = "999"
BOT_NAME = "relay"
MASTER_ID = "111"
USER_ID = "222"

_ENV_VARS = (
    "LLM_API_KEY", "BASE_URL", "MODEL", "CONTENT_MODEL", "SYSTEM_PROMPT",
    "MASTER_IDS", "MASTER_ID", "DISCORD_BOT_TOKEN",
)


@pytest.fixture(autouse=True)
def isolated_root(tmp_path, monkeypatch):
    """Point every path helper at an empty project root under tmp_path."""
    root = tmp_path / "root"
    (root / "config").mkdir(parents=True)
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RELAYBOT_ROOT", str(root))
    paths.reset_base_path()
    config.reload()
    yield root
    paths.reset_base_path()
    config.reload()


# ── Completion client ──────────────────────────────────────────────────


class FakeLLM:
    """Scripted stand-in for LLMClient.

    ``responses`` items are Completions or callables taking the recorded call
    dict. When the queue runs dry ``default`` answers.
    """

    def __init__(self, responses=None, default: Optional[Callable[[Dict[str, Any]], Completion]] = None):
        self.responses: List[Any] = list(responses or [])
        self.default = default or (lambda _call: Completion(text="ok"))
        self.calls: List[Dict[str, Any]] = []

    def complete(self, model, system_prompt, messages, tools=None) -> Completion:
        call = {
            "model": model,
            "system_prompt": system_prompt,
            "messages": copy.deepcopy(list(messages)),
            "tools": list(tools or []),
        }
        self.calls.append(call)
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        return item(call) if callable(item) else item


def tool_completion(name: str, arguments: str = "{}", call_id: str = "call_abcdef123456", text=None):
    return Completion(text=text, tool_calls=[ToolCall(call_id, name, arguments)])


@pytest.fixture
def fake_llm():
    return FakeLLM()


# ── Model catalog ──────────────────────────────────────────────────────


class FakeModelsCache:
    def __init__(self, models: Optional[List[Dict[str, Any]]] = None):
        self.models = models or []

    def get_models(self):
        return self.models

    def get_model(self, model_id):
        return next((m for m in self.models if m["id"] == model_id), None)

    def model_exists(self, model_id):
        return self.get_model(model_id) is not None

    def get_model_modalities(self, model_id):
        model = self.get_model(model_id) or {}
        return list((model.get("architecture") or {}).get("input_modalities") or ["text"])

    def find_closest_models(self, search, limit=5):
        return [m["id"] for m in self.models if search.lower() in m["id"].lower()][:limit]


def model_entry(model_id: str, modalities=("text",), prompt="0.000001", completion="0.000002", context=128000):
    return {
        "id": model_id,
        "name": model_id.split("/")[-1],
        "context_length": context,
        "architecture": {"input_modalities": list(modalities)},
        "pricing": {"prompt": prompt, "completion": completion},
    }


@pytest.fixture
def models_cache():
    return FakeModelsCache([
        model_entry("test/model"),
        model_entry("vision/describer", ("text", "image")),
        model_entry("openai/gpt-4.1", ("text", "image"), prompt="0.000002", completion="0.000008"),
    ])


# ── Storage ────────────────────────────────────────────────────────────


@pytest.fixture
def store():
    db = Database()
    yield ConversationStore(db)
    db.close()


@pytest.fixture
def settings():
    return BotSettings(
        default_model="test/model",
        content_model=None,
        system_prompt="You are a test bot.",
        history_limit=50,
        max_depth=10,
        master_ids=frozenset({MASTER_ID}),
    )


# ── Transport ──────────────────────────────────────────────────────────


class Transport:
    """Records everything the bot sends back for one chat."""

    def __init__(self):
        self.sent: List[str] = []
        self.replies: List[str] = []
        self.reactions: List[str] = []
        self.polls: List[Any] = []
        self.prompts: List[str] = []
        self.confirm_answer: Any = True

    @property
    def visible(self) -> List[str]:
        return self.replies + self.sent

    def confirm(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        if isinstance(self.confirm_answer, Exception):
            raise self.confirm_answer
        return bool(self.confirm_answer)

    def incoming(
        self,
        text: Optional[str] = None,
        chat_id: str = "chat-1",
        sender_id: str = USER_ID,
        is_group: bool = False,
        admin: bool = False,
        content=None,
        **kwargs: Any,
    ) -> IncomingMessage:
        blocks = list(content) if content is not None else [TextBlock(text or "")]
        return IncomingMessage(
            chat_id=chat_id,
            sender_ids=[sender_id],
            content=blocks,
            is_group=is_group,
            sender_name=kwargs.pop("sender_name", "Alice"),
            timestamp=kwargs.pop("timestamp", datetime(2026, 2, 19, 8, 30, tzinfo=timezone.utc)),
            self_ids=[BOT_ID],
            self_name=BOT_NAME,
            get_admin_status=lambda: admin,
            send_message=self.sent.append,
            reply_to_message=self.replies.append,
            react_to_message=self.reactions.append,
            send_poll=lambda q, opts: self.polls.append((q, opts)),
            confirm=self.confirm,
            **kwargs,
        )


@pytest.fixture
def transport():
    return Transport()
