"""
Action execution framework.

An action is a named operation the model (or a ``!command``) can invoke.
Each :class:`ActionDescriptor` declares its JSON-schema parameters and its
:class:`ActionPermissions`; :class:`ActionExecutor` enforces the permissions,
builds a scoped :class:`ActionContext` holding only the capabilities the
action asked for, asks for confirmation when the action is not
auto-executing, and runs the implementation.

Storage scoping:
    ctx.db       private to (chat, action), always available
    ctx.chat_db  shared by all actions of one chat      (use_chat_db)
    ctx.root_db  the process-wide database               (use_root_db)
"""

import concurrent.futures
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from relaybot.core.content import Block
from relaybot.core.errors import ActionNotFound, CapabilityNotGranted, PermissionDenied
from relaybot.core.logger import ActionLogger
from relaybot.interfaces.message_formatting import actions_to_openai_format, shorten_tool_id
from relaybot.memory.database import Database
from relaybot.utils.paths import action_db_path, chat_db_path

logger = logging.getLogger(__name__)

ACTION_PREFIX = "🔧"


# ── Descriptors ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ActionPermissions:
    auto_execute: bool = False
    auto_continue: bool = False
    require_admin: bool = False
    require_master: bool = False
    use_chat_db: bool = False
    use_root_db: bool = False
    use_llm: bool = False
    silent: bool = False


@dataclass(frozen=True)
class ActionDescriptor:
    """One catalog entry. ``fn(ctx, params)`` returns a value or an ActionSignal."""

    name: str
    description: str
    fn: Callable[["ActionContext", Dict[str, Any]], Any]
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    permissions: ActionPermissions = ActionPermissions()
    command: Optional[str] = None


@dataclass
class ActionSignal:
    """Returned by an implementation to override ``auto_continue`` for one call."""

    result: Any
    auto_continue: bool


@dataclass
class ActionOutcome:
    result: Any
    permissions: ActionPermissions


# ── Caller ─────────────────────────────────────────────────────────────


def _noop(*_args: Any, **_kwargs: Any) -> None:
    return None


@dataclass
class CallerContext:
    """What the transport knows about the turn that triggered an action."""

    chat_id: str
    sender_ids: List[str]
    content: List[Block] = field(default_factory=list)
    is_admin: Callable[[], bool] = lambda: False
    send_message: Callable[[str], Any] = _noop
    reply: Callable[[str], Any] = _noop
    react_to_message: Callable[[str], Any] = _noop
    send_poll: Callable[[str, List[str]], Any] = _noop
    confirm: Callable[[str], bool] = lambda _prompt: False
    is_debug: bool = False


# ── Scoped context ─────────────────────────────────────────────────────


class ActionContext:
    """Capabilities handed to one action invocation.

    Optional grants are reached through properties that raise
    :class:`CapabilityNotGranted` when the descriptor did not request them.
    """

    def __init__(
        self,
        caller: CallerContext,
        action_name: str,
        db: Database,
        short_id: str,
        catalog: "ActionCatalog",
        chat_db: Optional[Database] = None,
        root_db: Optional[Database] = None,
        store: Optional[Any] = None,
        call_llm: Optional[Callable[..., str]] = None,
        services: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._caller = caller
        self.action_name = action_name
        self.db = db
        self._short_id = short_id
        self._catalog = catalog
        self._chat_db = chat_db
        self._root_db = root_db
        self._store = store
        self._call_llm = call_llm
        self._services = services or {}

    # Caller fields

    @property
    def chat_id(self) -> str:
        return self._caller.chat_id

    @property
    def sender_ids(self) -> List[str]:
        return list(self._caller.sender_ids)

    @property
    def content(self) -> List[Block]:
        return self._caller.content

    @property
    def is_debug(self) -> bool:
        return self._caller.is_debug

    def is_admin(self) -> bool:
        return bool(self._caller.is_admin())

    def get_actions(self) -> List[ActionDescriptor]:
        return self._catalog.all()

    def service(self, name: str) -> Any:
        """Shared helper objects (``models``, ``settings``) wired in at startup."""
        if name not in self._services:
            raise CapabilityNotGranted(f"Service {name!r} is not available")
        return self._services[name]

    # Messaging

    def _decorate(self, message: str) -> str:
        if self._caller.is_debug:
            return f"{ACTION_PREFIX} *Action*    [{self._short_id}]\n\n{message}"
        return f"{ACTION_PREFIX} {message}"

    def send_message(self, message: str) -> None:
        self._caller.send_message(self._decorate(message))

    def reply(self, message: str) -> None:
        self._caller.reply(self._decorate(message))

    def log(self, *args: Any) -> str:
        """Log a line; echoed to the chat only while debug mode is on."""
        message = " ".join(str(a) for a in args)
        logger.info("[%s] %s", self.action_name, message)
        if self._caller.is_debug:
            self._caller.send_message(f"📝 {message}")
        return message

    def react_to_message(self, emoji: str) -> None:
        self._caller.react_to_message(emoji)

    def send_poll(self, question: str, options: List[str]) -> None:
        self._caller.send_poll(question, options)

    def confirm(self, prompt: str) -> bool:
        return _confirm(self._caller, prompt)

    # Checked grants

    @property
    def chat_db(self) -> Database:
        if self._chat_db is None:
            raise CapabilityNotGranted(f"{self.action_name} did not request use_chat_db")
        return self._chat_db

    @property
    def root_db(self) -> Database:
        if self._root_db is None:
            raise CapabilityNotGranted(f"{self.action_name} did not request use_root_db")
        return self._root_db

    @property
    def store(self) -> Any:
        """Conversation store on the root database (needs use_root_db)."""
        if self._store is None:
            raise CapabilityNotGranted(f"{self.action_name} did not request use_root_db")
        return self._store

    @property
    def call_llm(self) -> Callable[..., str]:
        if self._call_llm is None:
            raise CapabilityNotGranted(f"{self.action_name} did not request use_llm")
        return self._call_llm


def _confirm(caller: CallerContext, prompt: str) -> bool:
    """Ask the user; an unanswered prompt counts as a refusal."""
    try:
        return bool(caller.confirm(prompt))
    except (TimeoutError, concurrent.futures.TimeoutError):
        logger.info("Confirmation timed out in chat %s", caller.chat_id)
        return False


# ── Catalog ────────────────────────────────────────────────────────────


class ActionCatalog:
    """Name-indexed table of descriptors, rebuilt only through :meth:`reload`."""

    def __init__(self, descriptors: Iterable[ActionDescriptor] = ()) -> None:
        self._by_name: Dict[str, ActionDescriptor] = {}
        self._by_command: Dict[Tuple[str, ...], ActionDescriptor] = {}
        self.reload(descriptors)

    def reload(self, descriptors: Iterable[ActionDescriptor]) -> None:
        by_name: Dict[str, ActionDescriptor] = {}
        by_command: Dict[Tuple[str, ...], ActionDescriptor] = {}
        for d in descriptors:
            if d.name in by_name:
                raise ValueError(f"Duplicate action name: {d.name}")
            by_name[d.name] = d
            if d.command:
                key = tuple(d.command.lower().split())
                if key in by_command:
                    raise ValueError(f"Duplicate command: {d.command}")
                by_command[key] = d
        self._by_name = by_name
        self._by_command = by_command
        logger.info("Action catalog loaded: %d actions, %d commands", len(by_name), len(by_command))

    def get(self, name: str) -> Optional[ActionDescriptor]:
        return self._by_name.get(name)

    def all(self) -> List[ActionDescriptor]:
        return list(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def find_command(self, tokens: Sequence[str]) -> Optional[Tuple[ActionDescriptor, int]]:
        """Longest declared command matching the leading tokens.

        Returns ``(descriptor, tokens_consumed)`` or ``None``.
        """
        lowered = [t.lower() for t in tokens]
        longest = max((len(k) for k in self._by_command), default=0)
        for n in range(min(longest, len(lowered)), 0, -1):
            descriptor = self._by_command.get(tuple(lowered[:n]))
            if descriptor is not None:
                return descriptor, n
        return None

    def to_openai_tools(self) -> List[Dict[str, Any]]:
        return actions_to_openai_format(self.all())


# ── Executor ───────────────────────────────────────────────────────────


class ActionExecutor:
    """Runs actions with permission checks, scoped storage and confirmation.

    Args:
        catalog: Default resolver for action names.
        root_store: Conversation store on the process-wide database; its
            handle is what ``use_root_db`` grants.
        data_root: Directory under which per-chat and per-action databases live.
        master_ids: Sender ids with master permissions.
        call_llm: Callback granted to ``use_llm`` actions.
        action_logger: JSONL log of every execution (optional).
        services: Extra shared helpers exposed through ``ctx.service(name)``.
    """

    def __init__(
        self,
        catalog: ActionCatalog,
        root_store: Any,
        data_root: str,
        master_ids: Iterable[str] = (),
        call_llm: Optional[Callable[..., str]] = None,
        action_logger: Optional[ActionLogger] = None,
        services: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.catalog = catalog
        self.root_store = root_store
        self.data_root = data_root
        self.master_ids = frozenset(master_ids)
        self.call_llm = call_llm
        self.action_logger = action_logger
        self.services = dict(services or {})

    def is_master(self, sender_ids: Iterable[str]) -> bool:
        return any(s in self.master_ids for s in sender_ids)

    def execute_action(
        self,
        name: str,
        caller: CallerContext,
        params: Dict[str, Any],
        tool_call_id: Optional[str] = None,
        resolver: Optional[Callable[[str], Optional[ActionDescriptor]]] = None,
    ) -> ActionOutcome:
        """Resolve, authorize, confirm and run one action.

        Raises:
            ActionNotFound: unknown name.
            PermissionDenied: admin or master requirement not met.
            Exception: anything the implementation raises, unchanged.
        """
        descriptor = (resolver or self.catalog.get)(name)
        if descriptor is None:
            self._log(name, caller, params, tool_call_id, "denied", error="not found")
            raise ActionNotFound(name)
        perms = descriptor.permissions

        if perms.require_admin and not caller.is_admin():
            self._log(name, caller, params, tool_call_id, "denied", error="admin required")
            raise PermissionDenied(f'Action "{name}" requires admin permissions')
        if perms.require_master and not self.is_master(caller.sender_ids):
            self._log(name, caller, params, tool_call_id, "denied", error="master required")
            raise PermissionDenied(f'Action "{name}" requires master permissions')

        if not perms.auto_execute:
            prompt = (
                f"⚠️ *Confirm action: {name}*\n\n"
                f"{descriptor.description}\n\n"
                "React 👍 to confirm or 👎 to cancel."
            )
            if not _confirm(caller, prompt):
                self._log(name, caller, params, tool_call_id, "cancelled")
                return ActionOutcome(f'Action "{name}" was cancelled by user.', perms)

        db = Database(action_db_path(caller.chat_id, name, root=self.data_root))
        chat_db = (
            Database(chat_db_path(caller.chat_id, root=self.data_root))
            if perms.use_chat_db else None
        )
        ctx = ActionContext(
            caller,
            name,
            db=db,
            short_id=shorten_tool_id(tool_call_id or "command"),
            catalog=self.catalog,
            chat_db=chat_db,
            root_db=self.root_store.db if perms.use_root_db else None,
            store=self.root_store if perms.use_root_db else None,
            call_llm=self.call_llm if perms.use_llm else None,
            services=self.services,
        )

        start = time.perf_counter()
        try:
            raw = descriptor.fn(ctx, params)
        except Exception as e:
            self._log(name, caller, params, tool_call_id, "error",
                      duration_ms=_elapsed_ms(start), error=str(e))
            logger.error("Error executing action %s: %s", name, e)
            raise
        finally:
            db.close()
            if chat_db is not None:
                chat_db.close()

        self._log(name, caller, params, tool_call_id, "success", duration_ms=_elapsed_ms(start))
        if isinstance(raw, ActionSignal):
            return ActionOutcome(raw.result, replace(perms, auto_continue=raw.auto_continue))
        return ActionOutcome(raw, perms)

    def _log(
        self,
        name: str,
        caller: CallerContext,
        params: Dict[str, Any],
        tool_call_id: Optional[str],
        outcome: str,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        if self.action_logger is None:
            return
        self.action_logger.log_action(
            action=name,
            chat_id=caller.chat_id,
            sender_ids=caller.sender_ids,
            parameters=params,
            tool_call_id=tool_call_id,
            outcome=outcome,
            duration_ms=duration_ms,
            error=error,
        )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 1)
