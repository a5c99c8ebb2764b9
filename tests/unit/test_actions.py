"""
Tests for the action framework: catalog, permission checks, confirmation,
scoped storage, capability grants and the execution log.
"""

import concurrent.futures
import json
import os

import pytest

from relaybot.core.actions import (
    ActionCatalog,
    ActionDescriptor,
    ActionExecutor,
    ActionPermissions,
    ActionSignal,
    CallerContext,
)
from relaybot.core.errors import ActionNotFound, CapabilityNotGranted, PermissionDenied
from relaybot.core.logger import ActionLogger
from relaybot.utils.paths import action_db_path, chat_db_path

MASTER = "111"
USER = "222"


def _files_under(root):
    return [os.path.join(d, f) for d, _dirs, files in os.walk(root) for f in files]


class Counter:
    def __init__(self, result="done"):
        self.calls = 0
        self.result = result
        self.last_ctx = None

    def __call__(self, ctx, params):
        self.calls += 1
        self.last_ctx = ctx
        return self.result


@pytest.fixture
def data_root(tmp_path):
    return str(tmp_path / "data")


def _executor(store, data_root, *descriptors, **kwargs):
    return ActionExecutor(
        catalog=ActionCatalog(descriptors),
        root_store=store,
        data_root=data_root,
        master_ids=[MASTER],
        **kwargs,
    )


def _caller(sender=USER, admin=False, confirm=lambda _p: True, **kwargs):
    return CallerContext(chat_id="chat-1", sender_ids=[sender], is_admin=lambda: admin,
                         confirm=confirm, **kwargs)


# ── Catalog ────────────────────────────────────────────────────────────


class TestCatalog:

    def _d(self, name, command=None):
        return ActionDescriptor(name=name, description=name, fn=Counter(), command=command)

    def test_lookup(self):
        catalog = ActionCatalog([self._d("a"), self._d("b")])
        assert len(catalog) == 2
        assert "a" in catalog
        assert catalog.get("missing") is None
        assert [d.name for d in catalog.all()] == ["a", "b"]

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError, match="Duplicate action name"):
            ActionCatalog([self._d("a"), self._d("a")])

    def test_duplicate_commands_rejected(self):
        with pytest.raises(ValueError, match="Duplicate command"):
            ActionCatalog([self._d("a", "go"), self._d("b", "GO")])

    def test_find_command_prefers_longest(self):
        catalog = ActionCatalog([
            self._d("clear", "clear"),
            self._d("clear_notes", "clear notes"),
        ])
        desc, used = catalog.find_command(["Clear", "Notes", "now"])
        assert (desc.name, used) == ("clear_notes", 2)
        desc, used = catalog.find_command(["clear", "everything"])
        assert (desc.name, used) == ("clear", 1)
        assert catalog.find_command(["nothing"]) is None

    def test_reload_replaces_table(self):
        catalog = ActionCatalog([self._d("a")])
        catalog.reload([self._d("b")])
        assert "a" not in catalog and "b" in catalog

    def test_openai_tools(self):
        tools = ActionCatalog([self._d("a")]).to_openai_tools()
        assert tools[0]["function"]["name"] == "a"


# ── Permissions ────────────────────────────────────────────────────────


class TestPermissions:

    def test_unknown_action(self, store, data_root):
        executor = _executor(store, data_root)
        with pytest.raises(ActionNotFound, match="Action nope not found"):
            executor.execute_action("nope", _caller(), {})

    def test_master_required_denied_without_side_effects(self, store, data_root):
        impl = Counter()
        executor = _executor(store, data_root, ActionDescriptor(
            name="secret", description="x", fn=impl,
            permissions=ActionPermissions(auto_execute=True, require_master=True,
                                          use_chat_db=True, use_root_db=True),
        ))
        with pytest.raises(PermissionDenied):
            executor.execute_action("secret", _caller(sender=USER, admin=True), {})
        assert impl.calls == 0
        assert not os.path.exists(data_root) or _files_under(data_root) == []

    def test_master_gets_result_verbatim(self, store, data_root):
        result = {"answer": 42, "items": [1, 2]}
        executor = _executor(store, data_root, ActionDescriptor(
            name="secret", description="x", fn=Counter(result),
            permissions=ActionPermissions(auto_execute=True, require_master=True),
        ))
        outcome = executor.execute_action("secret", _caller(sender=MASTER), {})
        assert outcome.result is result

    def test_admin_required(self, store, data_root):
        executor = _executor(store, data_root, ActionDescriptor(
            name="adm", description="x", fn=Counter("ok"),
            permissions=ActionPermissions(auto_execute=True, require_admin=True),
        ))
        with pytest.raises(PermissionDenied, match="admin"):
            executor.execute_action("adm", _caller(admin=False), {})
        assert executor.execute_action("adm", _caller(admin=True), {}).result == "ok"

    def test_master_is_not_implicitly_admin(self, store, data_root):
        executor = _executor(store, data_root, ActionDescriptor(
            name="adm", description="x", fn=Counter(),
            permissions=ActionPermissions(auto_execute=True, require_admin=True),
        ))
        with pytest.raises(PermissionDenied):
            executor.execute_action("adm", _caller(sender=MASTER, admin=False), {})


# ── Confirmation ───────────────────────────────────────────────────────


class TestConfirmation:

    def _risky(self, impl):
        return ActionDescriptor(name="risky", description="Deletes things", fn=impl)

    def test_refusal_cancels_without_invoking(self, store, data_root):
        impl = Counter()
        prompts = []
        executor = _executor(store, data_root, self._risky(impl))
        caller = _caller(confirm=lambda p: prompts.append(p) or False)
        outcome = executor.execute_action("risky", caller, {})
        assert outcome.result == 'Action "risky" was cancelled by user.'
        assert impl.calls == 0
        assert prompts == [
            "⚠️ *Confirm action: risky*\n\nDeletes things\n\nReact 👍 to confirm or 👎 to cancel."
        ]

    @pytest.mark.parametrize("error", [TimeoutError, concurrent.futures.TimeoutError])
    def test_timeout_counts_as_refusal(self, store, data_root, error):
        impl = Counter()

        def slow(_prompt):
            raise error

        executor = _executor(store, data_root, self._risky(impl))
        outcome = executor.execute_action("risky", _caller(confirm=slow), {})
        assert "cancelled" in outcome.result
        assert impl.calls == 0

    def test_approval_runs(self, store, data_root):
        impl = Counter()
        executor = _executor(store, data_root, self._risky(impl))
        assert executor.execute_action("risky", _caller(confirm=lambda _p: True), {}).result == "done"
        assert impl.calls == 1

    def test_auto_execute_skips_prompt(self, store, data_root):
        prompts = []
        executor = _executor(store, data_root, ActionDescriptor(
            name="safe", description="x", fn=Counter(),
            permissions=ActionPermissions(auto_execute=True),
        ))
        executor.execute_action("safe", _caller(confirm=prompts.append), {})
        assert prompts == []


# ── Results ────────────────────────────────────────────────────────────


class TestResults:

    def test_signal_overrides_auto_continue(self, store, data_root):
        executor = _executor(store, data_root, ActionDescriptor(
            name="a", description="x",
            fn=lambda ctx, p: ActionSignal("stop here", auto_continue=False),
            permissions=ActionPermissions(auto_execute=True, auto_continue=True, silent=True),
        ))
        outcome = executor.execute_action("a", _caller(), {})
        assert outcome.result == "stop here"
        assert outcome.permissions.auto_continue is False
        assert outcome.permissions.silent is True
        assert executor.catalog.get("a").permissions.auto_continue is True

    def test_implementation_errors_propagate(self, store, data_root):
        def boom(ctx, params):
            raise RuntimeError("kaput")

        executor = _executor(store, data_root, ActionDescriptor(
            name="boom", description="x", fn=boom,
            permissions=ActionPermissions(auto_execute=True),
        ))
        with pytest.raises(RuntimeError, match="kaput"):
            executor.execute_action("boom", _caller(), {})

    def test_resolver_overrides_catalog(self, store, data_root):
        extra = ActionDescriptor(name="extra", description="x", fn=Counter("from resolver"),
                                 permissions=ActionPermissions(auto_execute=True))
        executor = _executor(store, data_root)
        outcome = executor.execute_action("extra", _caller(), {}, resolver={"extra": extra}.get)
        assert outcome.result == "from resolver"


# ── Context ────────────────────────────────────────────────────────────


class TestContext:

    def _run(self, store, data_root, fn, perms=None, caller=None, **kwargs):
        executor = _executor(store, data_root, ActionDescriptor(
            name="probe", description="x", fn=fn,
            permissions=perms or ActionPermissions(auto_execute=True),
        ), **kwargs)
        return executor.execute_action("probe", caller or _caller(), {}, "call_abcdef123456")

    @pytest.mark.parametrize("attr", ["chat_db", "root_db", "store", "call_llm"])
    def test_ungranted_capabilities_raise(self, store, data_root, attr):
        def probe(ctx, params):
            getattr(ctx, attr)

        with pytest.raises(CapabilityNotGranted):
            self._run(store, data_root, probe)

    def test_missing_service_raises(self, store, data_root):
        with pytest.raises(CapabilityNotGranted):
            self._run(store, data_root, lambda ctx, p: ctx.service("models"))

    def test_granted_capabilities(self, store, data_root):
        seen = {}

        def probe(ctx, params):
            seen["root_db"] = ctx.root_db
            seen["store"] = ctx.store
            seen["chat_db"] = ctx.chat_db
            seen["llm"] = ctx.call_llm("hi")
            seen["svc"] = ctx.service("settings")
            return "ok"

        perms = ActionPermissions(auto_execute=True, use_chat_db=True, use_root_db=True, use_llm=True)
        self._run(store, data_root, probe, perms,
                  call_llm=lambda prompt, model=None: f"echo {prompt}",
                  services={"settings": "S"})
        assert seen["root_db"] is store.db
        assert seen["store"] is store
        assert seen["chat_db"].path == chat_db_path("chat-1", root=data_root)
        assert seen["llm"] == "echo hi"
        assert seen["svc"] == "S"

    def test_action_db_is_private_per_action(self, store, data_root):
        def writer(ctx, params):
            ctx.db.execute("CREATE TABLE IF NOT EXISTS kv (k TEXT)")
            ctx.db.execute("INSERT INTO kv VALUES ('x')")
            return ctx.db.path

        def reader(ctx, params):
            ctx.db.execute("CREATE TABLE IF NOT EXISTS kv (k TEXT)")
            return len(ctx.db.query("SELECT * FROM kv"))

        executor = _executor(
            store, data_root,
            ActionDescriptor(name="writer", description="w", fn=writer,
                             permissions=ActionPermissions(auto_execute=True)),
            ActionDescriptor(name="reader", description="r", fn=reader,
                             permissions=ActionPermissions(auto_execute=True)),
        )
        path = executor.execute_action("writer", _caller(), {}).result
        assert path == action_db_path("chat-1", "writer", root=data_root)
        assert executor.execute_action("reader", _caller(), {}).result == 0
        other_chat = CallerContext(chat_id="chat-2", sender_ids=[USER])
        executor.execute_action("writer", _caller(), {})
        assert executor.execute_action("writer", other_chat, {}).result != path

    def test_chat_db_not_shared_by_similar_chat_ids(self, store, data_root):
        def remember(ctx, params):
            ctx.chat_db.execute("CREATE TABLE IF NOT EXISTS kv (v TEXT)")
            if params.get("value"):
                ctx.chat_db.execute("INSERT INTO kv VALUES (?)", (params["value"],))
            return [r["v"] for r in ctx.chat_db.query("SELECT v FROM kv")]

        executor = _executor(
            store, data_root,
            ActionDescriptor(name="remember", description="m", fn=remember,
                             permissions=ActionPermissions(auto_execute=True, use_chat_db=True)),
        )
        slash = CallerContext(chat_id="team/a", sender_ids=[USER])
        underscore = CallerContext(chat_id="team_a", sender_ids=[USER])
        assert executor.execute_action("remember", slash, {"value": "secret"}).result == ["secret"]
        assert executor.execute_action("remember", underscore, {}).result == []

    def test_messaging_is_prefixed(self, store, data_root):
        sent, replies = [], []

        def talk(ctx, params):
            ctx.send_message("hello")
            ctx.reply("answer")
            ctx.log("quiet")

        self._run(store, data_root, talk,
                  caller=_caller(send_message=sent.append, reply=replies.append))
        assert sent == ["🔧 hello"]
        assert replies == ["🔧 answer"]

    def test_debug_mode_headers_and_log_echo(self, store, data_root):
        sent = []

        def talk(ctx, params):
            ctx.log("step", 1)
            ctx.send_message("hello")

        self._run(store, data_root, talk,
                  caller=_caller(send_message=sent.append, is_debug=True))
        assert sent == ["📝 step 1", "🔧 *Action*    [bcdef1]\n\nhello"]

    def test_caller_fields(self, store, data_root):
        impl = Counter()
        self._run(store, data_root, impl, caller=_caller(sender=MASTER, admin=True))
        ctx = impl.last_ctx
        assert ctx.chat_id == "chat-1"
        assert ctx.sender_ids == [MASTER]
        assert ctx.is_admin() is True
        assert [d.name for d in ctx.get_actions()] == ["probe"]


# ── Action log ─────────────────────────────────────────────────────────


def test_every_execution_is_logged(store, data_root, tmp_path):
    log_dir = str(tmp_path / "actions")
    action_logger = ActionLogger(log_dir)
    executor = _executor(
        store, data_root,
        ActionDescriptor(name="ok", description="x", fn=Counter(),
                         permissions=ActionPermissions(auto_execute=True)),
        ActionDescriptor(name="locked", description="x", fn=Counter(),
                         permissions=ActionPermissions(auto_execute=True, require_master=True)),
        action_logger=action_logger,
    )
    executor.execute_action("ok", _caller(), {"a": 1}, "call_1")
    with pytest.raises(PermissionDenied):
        executor.execute_action("locked", _caller(), {})
    action_logger.close()

    files = os.listdir(log_dir)
    assert len(files) == 1 and files[0].endswith(".jsonl")
    with open(os.path.join(log_dir, files[0]), encoding="utf-8") as f:
        entries = [json.loads(line) for line in f]
    assert [(e["action"], e["outcome"]) for e in entries] == [("ok", "success"), ("locked", "denied")]
    assert entries[0]["parameters"] == {"a": 1}
    assert entries[0]["tool_call_id"] == "call_1"
    assert "duration_ms" in entries[0]
