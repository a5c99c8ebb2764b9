"""
Tests for the built-in actions, run through the real executor.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import MASTER_ID, USER_ID
from relaybot.actions import load_builtin_actions
from relaybot.actions.chat_settings import PERMANENT_DEBUG
from relaybot.actions.notes import SUMMARY_PROMPT
from relaybot.core.actions import ActionCatalog, ActionExecutor, CallerContext
from relaybot.core.content import AssistantMessage, TextBlock, ToolCallBlock, UserMessage
from relaybot.core.errors import PermissionDenied

T0 = datetime(2026, 2, 19, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def llm_prompts():
    return []


@pytest.fixture
def executor(store, settings, models_cache, tmp_path, llm_prompts):
    def call_llm(prompt, model=None):
        llm_prompts.append(prompt)
        return "  short summary  "

    return ActionExecutor(
        catalog=ActionCatalog(load_builtin_actions()),
        root_store=store,
        data_root=str(tmp_path / "data"),
        master_ids=settings.master_ids,
        call_llm=call_llm,
        services={"models": models_cache, "settings": settings},
    )


class Caller:
    def __init__(self, sender=USER_ID, admin=True, confirm=True, chat_id="chat-1"):
        self.sent, self.replies = [], []
        self.context = CallerContext(
            chat_id=chat_id,
            sender_ids=[sender],
            is_admin=lambda: admin,
            send_message=self.sent.append,
            reply=self.replies.append,
            confirm=lambda _prompt: confirm,
        )


def run(executor, name, params=None, caller=None):
    caller = caller or Caller()
    return executor.execute_action(name, caller.context, params or {}).result


def test_catalog_is_complete():
    names = {d.name for d in load_builtin_actions()}
    assert names == {
        "enable_chat", "disable_chat", "set_system_prompt", "get_system_prompt",
        "set_model", "get_model", "set_response_mode", "debug_chat", "set_content_model",
        "clear_conversation", "recall_history", "show_conversation", "show_info",
        "search_models", "notes", "clear_notes", "summarize_text",
    }


# ── Chat settings ──────────────────────────────────────────────────────


class TestEnableDisable:

    def test_master_can_enable_and_disable(self, executor, store):
        assert run(executor, "enable_chat", caller=Caller(sender=MASTER_ID)) == "Bot enabled."
        assert store.get_chat("chat-1").is_enabled is True
        assert run(executor, "disable_chat", caller=Caller(sender=MASTER_ID)) == "Bot disabled."
        assert store.get_chat("chat-1").is_enabled is False

    def test_admin_is_not_enough(self, executor, store):
        with pytest.raises(PermissionDenied):
            run(executor, "enable_chat", caller=Caller(sender=USER_ID, admin=True))
        assert store.get_chat("chat-1") is None


class TestPromptAndModel:

    def test_prompt_round_trip(self, executor, store):
        out = run(executor, "set_system_prompt", {"prompt": "Talk like a pirate"})
        assert "Talk like a pirate" in out
        assert store.get_chat("chat-1").system_prompt == "Talk like a pirate"
        assert "Talk like a pirate" in run(executor, "get_system_prompt")

    def test_default_prompt_reported(self, executor):
        assert "default system prompt" in run(executor, "get_system_prompt")
        assert "You are a test bot." in run(executor, "get_system_prompt")

    def test_empty_prompt_rejected(self, executor):
        with pytest.raises(ValueError, match="cannot be empty"):
            run(executor, "set_system_prompt", {"prompt": "  "})

    def test_settings_need_admin(self, executor):
        with pytest.raises(PermissionDenied):
            run(executor, "set_system_prompt", {"prompt": "x"}, Caller(admin=False))

    def test_model_set_and_revert(self, executor, store):
        run(executor, "set_model", {"model": "openai/gpt-4.1"})
        assert store.get_chat("chat-1").model == "openai/gpt-4.1"
        assert "openai/gpt-4.1" in run(executor, "get_model")
        out = run(executor, "set_model", {"model": ""})
        assert "reverted" in out and "test/model" in out
        assert store.get_chat("chat-1").model is None

    def test_response_mode(self, executor, store):
        out = run(executor, "set_response_mode", {"respond_on_any": "yes", "respond_on_mention": False})
        chat = store.get_chat("chat-1")
        assert chat.respond_on_any is True
        assert chat.respond_on_mention is False
        assert chat.respond_on_reply is False
        assert "respond_on_any: true" in out

    def test_response_mode_without_changes(self, executor):
        assert run(executor, "set_response_mode").startswith("No changes requested")

    def test_response_mode_rejects_unknown_values(self, executor, store):
        run(executor, "set_response_mode", {"respond_on_any": True})
        with pytest.raises(ValueError, match="Expected true or false, got 'maybe'"):
            run(executor, "set_response_mode", {"respond_on_any": "maybe", "respond_on_reply": "on"})
        chat = store.get_chat("chat-1")
        assert chat.respond_on_any is True
        assert chat.respond_on_reply is False


class TestDebug:

    def test_default_duration(self, executor, store):
        before = datetime.now(timezone.utc)
        assert run(executor, "debug_chat").startswith("Debug on for 10min")
        until = store.get_chat("chat-1").debug_until
        assert before + timedelta(minutes=9) < until < before + timedelta(minutes=11)

    def test_permanent_and_off(self, executor, store):
        assert run(executor, "debug_chat", {"minutes": "0"}) == "Debug on (permanent)."
        assert store.get_chat("chat-1").debug_until == PERMANENT_DEBUG
        assert run(executor, "debug_chat", {"minutes": "off"}) == "Debug off."
        assert store.get_chat("chat-1").debug_until is None

    def test_invalid_value(self, executor):
        assert run(executor, "debug_chat", {"minutes": "soon"}).startswith("❌ Invalid value")


class TestContentModel:

    def test_unknown_model_suggests(self, executor):
        out = run(executor, "set_content_model", {"contentType": "image", "model": "gpt-4"})
        assert "not found" in out
        assert "`openai/gpt-4.1`" in out

    def test_model_must_support_modality(self, executor):
        out = run(executor, "set_content_model", {"contentType": "audio", "model": "vision/describer"})
        assert "does not support `audio`" in out

    def test_sets_model(self, executor, store):
        run(executor, "set_content_model", {"contentType": "image", "model": "vision/describer"})
        assert store.get_chat("chat-1").content_models == {"image": "vision/describer"}

    def test_bad_content_type(self, executor):
        with pytest.raises(ValueError, match="contentType"):
            run(executor, "set_content_model", {"contentType": "smell", "model": "x"})


# ── Conversation ───────────────────────────────────────────────────────


class TestConversation:

    def _seed(self, store, count=3):
        store.create_chat("chat-1")
        for i in range(count):
            store.add_message("chat-1", UserMessage([TextBlock(f"msg {i}")]), [USER_ID],
                              timestamp=T0 + timedelta(minutes=i))

    def test_clear(self, executor, store):
        self._seed(store)
        caller = Caller()
        assert run(executor, "clear_conversation", caller=caller) == "Conversation history cleared."
        assert caller.replies == ["🔧 🗑️ Conversation history cleared!"]
        assert store.get_messages("chat-1") == []

    def test_recall(self, executor, store):
        self._seed(store)
        store.add_message("chat-1", AssistantMessage([ToolCallBlock("t1", "notes", '{"operation": "list"}')]),
                          ["999"], timestamp=T0 + timedelta(minutes=5))
        out = run(executor, "recall_history", {"since": "2026-02-19T08:01:00Z", "limit": 10})
        lines = out.splitlines()
        assert lines[0] == "Recalled 3 messages since 2026-02-19T08:01:00Z:"
        assert lines[2] == f"[2026-02-19 08:01:00Z] [user] ({USER_ID}): msg 1"
        assert lines[-1].endswith('[called notes({"operation": "list"})]')

    def test_recall_nothing_stops_the_turn(self, executor, store):
        store.create_chat("chat-1")
        outcome = executor.execute_action(
            "recall_history", Caller().context, {"since": "2030-01-01T00:00:00Z"}
        )
        assert outcome.result == "No messages found in that time range."
        assert outcome.permissions.auto_continue is False

    def test_recall_bad_timestamp(self, executor):
        with pytest.raises(ValueError, match="Invalid timestamp"):
            run(executor, "recall_history", {"since": "yesterday"})

    def test_show_conversation(self, executor, store):
        self._seed(store, 2)
        out = run(executor, "show_conversation", {"limit": 5})
        assert out.startswith("*Conversation history* (2 messages)")
        assert out.index("msg 0") < out.index("msg 1")

    def test_show_conversation_empty(self, executor):
        assert run(executor, "show_conversation") == "No conversation history found for this chat."

    def test_show_info(self, executor, store):
        self._seed(store, 2)
        out = run(executor, "show_info")
        assert "- status: disabled" in out
        assert "- model: test/model" in out
        assert "- messages in context: 2" in out

    def test_search_models(self, executor):
        out = run(executor, "search_models", {"providers": "gpt,model", "sortBy": "output_price"})
        lines = out.splitlines()
        assert len(lines) == 4
        assert "`test/model`" in lines[2]
        assert "`openai/gpt-4.1`" in lines[3]

    def test_search_models_no_match(self, executor):
        assert run(executor, "search_models", {"providers": "llama"}).startswith("No models match")


# ── Notes and summaries ────────────────────────────────────────────────


class TestNotes:

    def test_add_list_delete(self, executor):
        assert run(executor, "notes", {"operation": "add", "text": "buy milk"}) == "📌 Note 1 saved."
        run(executor, "notes", {"operation": "add", "text": "call mom"})
        assert run(executor, "notes", {"operation": "list"}) == "*Notes:*\n1. buy milk\n2. call mom"
        assert run(executor, "notes", {"operation": "delete", "text": "1"}) == "Note 1 deleted."
        assert run(executor, "notes", {"operation": "delete", "text": "1"}) == "Note 1 not found."
        assert run(executor, "notes", {"operation": "list"}) == "*Notes:*\n2. call mom"

    def test_notes_are_per_chat(self, executor):
        run(executor, "notes", {"operation": "add", "text": "private"})
        other = Caller(chat_id="chat-2")
        assert run(executor, "notes", {"operation": "list"}, other) == "No notes yet."

    def test_clear_notes_asks_first(self, executor):
        run(executor, "notes", {"operation": "add", "text": "keep me"})
        out = run(executor, "clear_notes", caller=Caller(confirm=False))
        assert out == 'Action "clear_notes" was cancelled by user.'
        assert run(executor, "clear_notes", caller=Caller(confirm=True)) == "Deleted 1 note(s)."

    def test_bad_operation(self, executor):
        with pytest.raises(ValueError, match="Unknown operation"):
            run(executor, "notes", {"operation": "rename"})

    def test_summary_is_cached(self, executor, llm_prompts):
        assert run(executor, "summarize_text", {"text": "long text"}) == "short summary"
        assert run(executor, "summarize_text", {"text": "long text"}) == "short summary"
        assert llm_prompts == [SUMMARY_PROMPT + "long text"]
