"""Built-in actions."""

from typing import List

from relaybot.core.actions import ActionDescriptor


def load_builtin_actions() -> List[ActionDescriptor]:
    """Descriptors for every built-in action, in catalog order."""
    from relaybot.actions import chat_settings, conversation, notes

    return [*chat_settings.ACTIONS, *conversation.ACTIONS, *notes.ACTIONS]
