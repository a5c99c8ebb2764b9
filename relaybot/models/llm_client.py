"""
Completion-service client (OpenAI-compatible chat completions).

Works against any endpoint speaking the chat-completions protocol; the
default is OpenRouter. Set LLM_API_KEY (and optionally BASE_URL / MODEL)
in .env.

The client never retries: a failed call raises CompletionServiceError and
the caller decides what the turn does next.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from openai import OpenAI

from relaybot.core.content import Block, TextBlock, UserMessage
from relaybot.core.errors import CompletionServiceError
from relaybot.interfaces.message_formatting import format_user_content
from relaybot.utils.config import get_llm_config

logger = logging.getLogger(__name__)

APP_TITLE = "relaybot"
APP_REFERER = "https://github.com/relaybot/relaybot"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"


@dataclass
class Completion:
    """One completion: optional free text plus zero or more tool calls."""

    text: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


class LLMClient:
    """Chat-completions client with tool support and usage logging."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        default_model: Optional[str] = None,
    ) -> None:
        cfg = get_llm_config()
        key = api_key or cfg["api_key"]
        if not key:
            raise ValueError(
                "LLM_API_KEY not set in environment or passed to LLMClient. "
                "Get a key at https://openrouter.ai/keys"
            )
        self._base_url = base_url or cfg["base_url"]
        self._timeout = float(timeout or cfg["timeout_sec"])
        self.default_model = default_model or cfg["model"]
        self._client = OpenAI(
            api_key=key,
            base_url=self._base_url,
            max_retries=0,
            default_headers={"HTTP-Referer": APP_REFERER, "X-Title": APP_TITLE},
        )
        logger.info(
            "LLM client initialized (base_url=%s, default_model=%s)",
            self._base_url,
            self.default_model,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def complete(
        self,
        model: Optional[str],
        system_prompt: Optional[str],
        messages: Sequence[Dict[str, Any]],
        tools: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Completion:
        """Submit one chat completion request.

        Args:
            model: Model id; falls back to the client default.
            system_prompt: Prepended as a system message when non-empty.
            messages: Chronological wire messages.
            tools: Function tool specs; omitted from the request when empty.

        Raises:
            CompletionServiceError: transport or service failure.
        """
        model = model or self.default_model
        wire: List[Dict[str, Any]] = []
        if system_prompt:
            wire.append({"role": "system", "content": system_prompt})
        wire.extend(messages)
        kwargs: Dict[str, Any] = {"model": model, "messages": wire, "timeout": self._timeout}
        if tools:
            kwargs["tools"] = list(tools)

        start = time.perf_counter()
        try:
            response = self._client.chat.completions.create(**kwargs)
        except Exception as e:
            logger.error("Completion request to %s failed: %s", model, e)
            raise CompletionServiceError(str(e)) from e

        if not getattr(response, "choices", None):
            raise CompletionServiceError(f"Empty response from {model}")
        msg = response.choices[0].message
        calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in (getattr(msg, "tool_calls", None) or [])
        ]
        usage = getattr(response, "usage", None)
        input_tok = getattr(usage, "prompt_tokens", 0) if usage else 0
        output_tok = getattr(usage, "completion_tokens", 0) if usage else 0
        actual_model = getattr(response, "model", model) or model
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "Completion [%s]: %d in + %d out, %d tool call(s) in %d ms",
            actual_model, input_tok or 0, output_tok or 0, len(calls), duration_ms,
        )
        return Completion(
            text=msg.content or None,
            tool_calls=calls,
            model=actual_model,
            input_tokens=input_tok or 0,
            output_tokens=output_tok or 0,
        )


CallLlm = Callable[..., str]


def create_call_llm(client: Any, default_model: str) -> CallLlm:
    """Build the ``call_llm(prompt, model=None)`` callback granted to actions.

    ``prompt`` is a string or a list of content blocks; the reply text is
    returned (empty string when the model answered with no text).
    """
    def call_llm(prompt: Union[str, List[Block]], model: Optional[str] = None) -> str:
        blocks = [TextBlock(prompt)] if isinstance(prompt, str) else list(prompt)
        content = format_user_content(UserMessage(blocks))
        completion = client.complete(
            model or default_model, None, [{"role": "user", "content": content}]
        )
        return completion.text or ""

    return call_llm
