"""
Message handler and tool-call loop.

One call to :meth:`MessageHandler.handle_message` is one turn: the inbound
message is persisted, the response gate decides whether to answer, and the
completion service is called repeatedly while tool calls ask for it. The
number of follow-up rounds is capped at ``max_depth``; reaching the cap is
reported to the chat as a warning.

Per tool call:
    success           -> result persisted, shown, fed back to the model
    success, silent   -> placeholder persisted, nothing shown, real result fed back
    tool error        -> error persisted, shown, fed back; forces another round
    denied / unknown  -> denial persisted, shown, fed back; no forced round
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from relaybot.core.actions import ActionCatalog, ActionExecutor, CallerContext
from relaybot.core.content import (
    AssistantMessage,
    Block,
    TextBlock,
    ToolCallBlock,
    ToolMessage,
    UserMessage,
)
from relaybot.core.errors import (
    ActionNotFound,
    ArgumentParseError,
    CompletionServiceError,
    PermissionDenied,
)
from relaybot.interfaces.incoming import IncomingMessage
from relaybot.interfaces.message_formatting import (
    format_assistant_content,
    format_messages_for_openai,
    format_user_message,
    parse_command_args,
    should_respond,
    shorten_tool_id,
    tool_result_text,
)
from relaybot.memory.store import Chat, ConversationStore
from relaybot.utils.config import BotSettings

logger = logging.getLogger(__name__)

SILENT_PLACEHOLDER = "[result hidden]"
COMMAND_PREFIX = "!"


@dataclass
class TurnOutcome:
    """What happened during one turn (for logging and tests)."""

    responded: bool = False
    command: Optional[str] = None
    submissions: int = 0
    depth: int = 0
    depth_limited: bool = False
    error: Optional[str] = None


def parse_tool_arguments(raw: Optional[str]) -> Dict[str, Any]:
    """Decode tool-call arguments; anything but a JSON object is an error."""
    if raw is None or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ArgumentParseError(f"Invalid JSON arguments: {e.msg}") from e
    if not isinstance(value, dict):
        raise ArgumentParseError("Arguments must be a JSON object")
    return value


def _pretty_arguments(raw: str) -> str:
    try:
        return json.dumps(json.loads(raw or "{}"), indent=2, ensure_ascii=False)
    except json.JSONDecodeError:
        return raw


def _notice(header: str, body: str) -> str:
    return f"{header}\n\n{body}"


class MessageHandler:
    """Runs turns against one store, catalog, executor and completion client."""

    def __init__(
        self,
        store: ConversationStore,
        catalog: ActionCatalog,
        executor: ActionExecutor,
        llm_client: Any,
        translator: Any,
        settings: BotSettings,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.executor = executor
        self.llm = llm_client
        self.translator = translator
        self.settings = settings

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle_message(self, incoming: IncomingMessage) -> TurnOutcome:
        chat = self.store.create_chat(incoming.chat_id)
        caller = self._caller_context(incoming, chat)

        index, first_text = _first_text(incoming.content)
        if first_text is not None and first_text.text.startswith(COMMAND_PREFIX):
            return self._handle_command(incoming, caller, first_text.text[len(COMMAND_PREFIX):])

        content: List[Block] = list(incoming.content)
        suffix = ""
        if first_text is not None:
            formatted, suffix = format_user_message(
                first_text, incoming.is_group, incoming.sender_name,
                incoming.timestamp, incoming.self_ids,
            )
            content[index] = TextBlock(formatted)
        self.store.add_message(incoming.chat_id, UserMessage(content), incoming.sender_ids)

        if not should_respond(
            chat, incoming.is_group, incoming.content,
            incoming.self_ids, incoming.quoted_sender_id,
        ):
            logger.debug("Not responding in chat %s", incoming.chat_id)
            return TurnOutcome()

        system_prompt = (chat.system_prompt or self.settings.system_prompt) + suffix
        model = chat.model or self.settings.default_model
        logger.info("Turn in chat %s with model %s", incoming.chat_id, model)

        try:
            rows = self.store.get_messages(incoming.chat_id, self.settings.history_limit)
            rows = self.translator.translate(rows, model, chat.content_models)
            wire = format_messages_for_openai(rows)
        except Exception as e:
            logger.error("Could not prepare context for chat %s: %s", incoming.chat_id, e,
                         exc_info=True)
            incoming.reply_to_message(_notice("❌ *Error*", f"Could not prepare the conversation.\n\n{e}"))
            return TurnOutcome(responded=True, error=str(e))

        return self._run_loop(incoming, caller, model, system_prompt, wire)

    # ------------------------------------------------------------------
    # Tool-call loop
    # ------------------------------------------------------------------

    def _run_loop(
        self,
        incoming: IncomingMessage,
        caller: CallerContext,
        model: str,
        system_prompt: str,
        wire: List[Dict[str, Any]],
    ) -> TurnOutcome:
        outcome = TurnOutcome(responded=True)
        tools = self.catalog.to_openai_tools()
        depth = 0
        while True:
            outcome.submissions += 1
            try:
                completion = self.llm.complete(model, system_prompt, wire, tools)
            except CompletionServiceError as e:
                incoming.reply_to_message(_notice(
                    "❌ *Error*", f"An error occurred while processing the message.\n\n{e}"
                ))
                outcome.error = str(e)
                return outcome

            continue_processing = self._process_completion(incoming, caller, completion, wire)
            if not continue_processing:
                break
            if depth >= self.settings.max_depth:
                logger.warning("Depth limit %d reached in chat %s", depth, incoming.chat_id)
                incoming.reply_to_message(_notice(
                    "⚠️ *Depth limit reached*",
                    f"Stopped after {depth} follow-up rounds of tool calls.",
                ))
                outcome.depth_limited = True
                break
            depth += 1

        outcome.depth = depth
        return outcome

    def _process_completion(
        self,
        incoming: IncomingMessage,
        caller: CallerContext,
        completion: Any,
        wire: List[Dict[str, Any]],
    ) -> bool:
        """Persist and surface one completion; run its tool calls.

        Returns True when another completion round is requested.
        """
        chat_id = incoming.chat_id
        blocks: List[Block] = []
        if completion.text:
            blocks.append(TextBlock(completion.text))
        for call in completion.tool_calls:
            blocks.append(ToolCallBlock(call.id, call.name, call.arguments))
        if not blocks:
            logger.info("Empty completion in chat %s", chat_id)
            return False

        assistant = AssistantMessage(blocks)
        self.store.add_message(chat_id, assistant, incoming.self_ids[:1])
        wire.append(format_assistant_content(assistant))
        if completion.text:
            incoming.reply_to_message(completion.text)

        for call in completion.tool_calls:
            descriptor = self.catalog.get(call.name)
            if descriptor is not None and descriptor.permissions.silent:
                continue
            incoming.send_message(_notice(
                f"🔧 *Executing* {call.name}    [{shorten_tool_id(call.id)}]",
                f"parameters:\n```\n{_pretty_arguments(call.arguments)}\n```",
            ))

        continue_processing = False
        for call in completion.tool_calls:
            if self._run_tool_call(incoming, caller, call, wire):
                continue_processing = True
        return continue_processing

    def _run_tool_call(
        self,
        incoming: IncomingMessage,
        caller: CallerContext,
        call: Any,
        wire: List[Dict[str, Any]],
    ) -> bool:
        """Execute one tool call. Returns True when it forces another round."""
        short_id = shorten_tool_id(call.id)
        try:
            params = parse_tool_arguments(call.arguments)
            result = self.executor.execute_action(call.name, caller, params, call.id)
        except (PermissionDenied, ActionNotFound) as e:
            text = str(e)
            self._record_tool(incoming, call.id, text, wire, is_error=True)
            incoming.send_message(_notice(f"🚫 *Denied*    [{short_id}]", text))
            return False
        except Exception as e:
            logger.error("Tool %s failed in chat %s: %s", call.name, incoming.chat_id, e,
                         exc_info=True)
            text = f"Error executing {call.name}: {e}"
            self._record_tool(incoming, call.id, text, wire, is_error=True)
            incoming.send_message(_notice(f"❌ *Tool Error*    [{short_id}]", text))
            return True

        text = tool_result_text(result.result)
        if result.permissions.silent:
            self._record_tool(incoming, call.id, text, wire, persisted=SILENT_PLACEHOLDER)
        else:
            self._record_tool(incoming, call.id, text, wire)
            incoming.send_message(_notice(f"✅ *Result*    [{short_id}]", text))
        return result.permissions.auto_continue

    def _record_tool(
        self,
        incoming: IncomingMessage,
        tool_id: str,
        text: str,
        wire: List[Dict[str, Any]],
        is_error: bool = False,
        persisted: Optional[str] = None,
    ) -> None:
        stored = text if persisted is None else persisted
        self.store.add_message(
            incoming.chat_id,
            ToolMessage(tool_id, [TextBlock(stored)], is_error=is_error),
            incoming.self_ids[:1],
        )
        wire.append({"role": "tool", "tool_call_id": tool_id, "content": text})

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _handle_command(
        self, incoming: IncomingMessage, caller: CallerContext, command_text: str
    ) -> TurnOutcome:
        tokens = command_text.split()
        match = self.catalog.find_command(tokens) if tokens else None
        if match is None:
            name = tokens[0].lower() if tokens else ""
            incoming.reply_to_message(_notice("❌ *Error*", f"Unknown command: {name}"))
            return TurnOutcome(responded=True, command=name, error="unknown command")

        descriptor, used = match
        command = " ".join(tokens[:used]).lower()
        params = parse_command_args(tokens[used:], descriptor.parameters)
        logger.info("Command !%s -> %s %s", command, descriptor.name, params)
        try:
            result = self.executor.execute_action(descriptor.name, caller, params)
        except Exception as e:
            logger.error("Error executing command !%s: %s", command, e)
            incoming.reply_to_message(_notice("❌ *Error*", f"Error: {e}"))
            return TurnOutcome(responded=True, command=command, error=str(e))

        if isinstance(result.result, str) and result.result:
            incoming.reply_to_message(_notice(f"⚡ *Command* !{command}", result.result))
        return TurnOutcome(responded=True, command=command)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _caller_context(self, incoming: IncomingMessage, chat: Chat) -> CallerContext:
        return CallerContext(
            chat_id=incoming.chat_id,
            sender_ids=list(incoming.sender_ids),
            content=list(incoming.content),
            is_admin=incoming.get_admin_status,
            send_message=incoming.send_message,
            reply=incoming.reply_to_message,
            react_to_message=incoming.react_to_message,
            send_poll=incoming.send_poll,
            confirm=incoming.confirm,
            is_debug=chat.is_debug(),
        )


def _first_text(content: List[Block]) -> Tuple[int, Optional[TextBlock]]:
    for i, block in enumerate(content):
        if isinstance(block, TextBlock):
            return i, block
    return -1, None
