"""
Per-chat settings actions: enable/disable, prompt, model, response mode,
debug mode and per-modality content models.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Sequence

from relaybot.core.actions import ActionContext, ActionDescriptor, ActionPermissions
from relaybot.core.content import MEDIA_TYPES

_SETTINGS = ActionPermissions(auto_execute=True, require_admin=True, use_root_db=True)
PERMANENT_DEBUG = datetime(9999, 1, 1, tzinfo=timezone.utc)
DEFAULT_DEBUG_MINUTES = 10

_TRUE = ("true", "yes", "on", "1")
_FALSE = ("false", "no", "off", "0")


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    value = str(raw).strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"Expected true or false, got {raw!r}")


# ── Enable / disable ───────────────────────────────────────────────────


def enable_chat(ctx: ActionContext, params: Dict[str, Any]) -> str:
    ctx.store.update_chat(ctx.chat_id, is_enabled=True)
    return "Bot enabled."


def disable_chat(ctx: ActionContext, params: Dict[str, Any]) -> str:
    ctx.store.update_chat(ctx.chat_id, is_enabled=False)
    return "Bot disabled."


# ── System prompt ──────────────────────────────────────────────────────


def set_system_prompt(ctx: ActionContext, params: Dict[str, Any]) -> str:
    prompt = str(params.get("prompt") or "").strip()
    if not prompt:
        raise ValueError("System prompt cannot be empty")
    ctx.store.update_chat(ctx.chat_id, system_prompt=prompt)
    return f"✅ System prompt updated for chat {ctx.chat_id}\n\n*New prompt:*\n{prompt}"


def get_system_prompt(ctx: ActionContext, params: Dict[str, Any]) -> str:
    chat = ctx.store.get_chat(ctx.chat_id)
    if chat and chat.system_prompt:
        return f"*Custom system prompt for chat {ctx.chat_id}:*\n\n{chat.system_prompt}"
    default = ctx.service("settings").system_prompt
    return f"*Chat {ctx.chat_id} is using the default system prompt:*\n\n{default}"


# ── Model ──────────────────────────────────────────────────────────────


def set_model(ctx: ActionContext, params: Dict[str, Any]) -> str:
    """Set the chat model; an empty value reverts to the global default."""
    model = str(params.get("model") or "").strip()
    ctx.store.update_chat(ctx.chat_id, model=model or None)
    if model:
        return f"✅ Model updated for chat {ctx.chat_id}\n\n*New model:*\n{model}"
    default = ctx.service("settings").default_model
    return f"✅ Model reverted to default for chat {ctx.chat_id}\n\n*Default model:*\n{default}"


def get_model(ctx: ActionContext, params: Dict[str, Any]) -> str:
    chat = ctx.store.get_chat(ctx.chat_id)
    if chat and chat.model:
        return f"*Custom model for chat {ctx.chat_id}:*\n\n{chat.model}"
    default = ctx.service("settings").default_model
    return f"*Chat {ctx.chat_id} is using the default model:*\n\n{default}"


# ── Response mode ──────────────────────────────────────────────────────

_MODE_FLAGS = ("respond_on_any", "respond_on_mention", "respond_on_reply")


def set_response_mode(ctx: ActionContext, params: Dict[str, Any]) -> str:
    updates = {
        flag: _to_bool(params[flag])
        for flag in _MODE_FLAGS
        if params.get(flag) is not None
    }
    if not updates:
        return ("No changes requested. Use `respond_on_any`, `respond_on_mention`, "
                "and/or `respond_on_reply` parameters.")
    ctx.store.update_chat(ctx.chat_id, **updates)
    lines = "\n".join(f"{k}: {str(v).lower()}" for k, v in updates.items())
    return f"✅ Response mode updated for chat {ctx.chat_id}\n\n*Settings:*\n{lines}"


# ── Debug mode ─────────────────────────────────────────────────────────


def debug_chat(ctx: ActionContext, params: Dict[str, Any]) -> str:
    raw = params.get("minutes")
    value = "" if raw is None else str(raw).strip().lower()

    if value == "off":
        ctx.store.update_chat(ctx.chat_id, debug_until=None)
        return "Debug off."

    try:
        minutes = DEFAULT_DEBUG_MINUTES if value == "" else float(value)
    except ValueError:
        minutes = -1
    if minutes < 0:
        return (f'❌ Invalid value: "{raw}". Use a number of minutes, 0 for permanent, '
                'or "off" to disable.')

    if minutes == 0:
        ctx.store.update_chat(ctx.chat_id, debug_until=PERMANENT_DEBUG)
        return "Debug on (permanent)."

    until = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    ctx.store.update_chat(ctx.chat_id, debug_until=until)
    return f"Debug on for {minutes:g}min (until {until.strftime('%H:%M')} UTC)."


# ── Content models ─────────────────────────────────────────────────────


def set_content_model(ctx: ActionContext, params: Dict[str, Any]) -> str:
    content_type = str(params.get("contentType") or "").strip().lower()
    model = str(params.get("model") or "").strip()
    if content_type not in MEDIA_TYPES:
        raise ValueError(f"contentType must be one of: {', '.join(MEDIA_TYPES)}")
    if not model:
        raise ValueError("model is required")

    models = ctx.service("models")
    if not models.model_exists(model):
        suggestions = models.find_closest_models(model)
        message = f"Model `{model}` not found in the model list."
        if suggestions:
            message += "\n\nDid you mean:\n" + "\n".join(f"• `{s}`" for s in suggestions)
        message += "\n\nUse *!search models* to browse available models."
        return message

    modalities = models.get_model_modalities(model)
    if content_type not in modalities:
        return (f"Model `{model}` does not support `{content_type}` input. "
                f"Its supported modalities are: {', '.join(modalities)}")

    chat = ctx.store.get_chat(ctx.chat_id)
    current = dict(chat.content_models) if chat else {}
    current[content_type] = model
    ctx.store.update_chat(ctx.chat_id, content_models=current)
    return f"Content model for *{content_type}* set to `{model}`"


# ── Descriptors ────────────────────────────────────────────────────────


def _params(properties: Dict[str, Any], required: Sequence[str] = ()) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": list(required)}


ACTIONS = [
    ActionDescriptor(
        name="enable_chat",
        command="enable",
        description="Enable bot answers in the current chat (master only)",
        fn=enable_chat,
        permissions=ActionPermissions(auto_execute=True, require_master=True, use_root_db=True),
    ),
    ActionDescriptor(
        name="disable_chat",
        command="disable",
        description="Disable bot answers in the current chat (master only)",
        fn=disable_chat,
        permissions=ActionPermissions(auto_execute=True, require_master=True, use_root_db=True),
    ),
    ActionDescriptor(
        name="set_system_prompt",
        command="set prompt",
        description="Set a custom system prompt for the current chat (admin only)",
        fn=set_system_prompt,
        parameters=_params(
            {"prompt": {"type": "string", "description": "The system prompt to set for the chat"}},
            ["prompt"],
        ),
        permissions=_SETTINGS,
    ),
    ActionDescriptor(
        name="get_system_prompt",
        command="get prompt",
        description="Get the current system prompt for the chat (admin only)",
        fn=get_system_prompt,
        permissions=_SETTINGS,
    ),
    ActionDescriptor(
        name="set_model",
        command="set model",
        description=("Set a custom LLM model for the chat (admin only). "
                     "Use an empty value to revert to the global default."),
        fn=set_model,
        parameters=_params(
            {"model": {"type": "string",
                       "description": "Model id to use (empty to revert to default)",
                       "default": ""}},
            ["model"],
        ),
        permissions=_SETTINGS,
    ),
    ActionDescriptor(
        name="get_model",
        command="get model",
        description="Get the current LLM model for the chat (admin only)",
        fn=get_model,
        permissions=_SETTINGS,
    ),
    ActionDescriptor(
        name="set_response_mode",
        command="set response",
        description=("Configure when the bot responds in a group chat. Set respond_on_any, "
                     "respond_on_mention and/or respond_on_reply independently."),
        fn=set_response_mode,
        parameters=_params({
            "respond_on_any": {"type": "boolean", "description": "Respond to any message"},
            "respond_on_mention": {"type": "boolean", "description": "Respond when mentioned"},
            "respond_on_reply": {"type": "boolean",
                                 "description": "Respond to replies to the bot's messages"},
        }),
        permissions=_SETTINGS,
    ),
    ActionDescriptor(
        name="debug_chat",
        command="debug",
        description=("Toggle per-chat debug mode. Shows verbose action output and logs "
                     "while enabled. Default: 10 minutes."),
        fn=debug_chat,
        parameters=_params({
            "minutes": {"type": "string",
                        "description": "Minutes to enable debug (0=permanent, 'off'=disable). Default: 10"},
        }),
        permissions=_SETTINGS,
    ),
    ActionDescriptor(
        name="set_content_model",
        command="set content-model",
        description=("Set the model used to describe a content type (image/audio/video) "
                     "for chat models that cannot read it (admin only)."),
        fn=set_content_model,
        parameters=_params(
            {
                "contentType": {"type": "string", "enum": list(MEDIA_TYPES),
                                "description": "Content type: image, audio or video"},
                "model": {"type": "string", "description": "Model id used for the description"},
            },
            ["contentType", "model"],
        ),
        permissions=_SETTINGS,
    ),
]
