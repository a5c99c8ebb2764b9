"""
Exception taxonomy for relaybot.

Raised where the failure happens, handled by the message handler:
permission and lookup failures are reported to the chat, tool failures are
fed back to the model, completion failures end the turn.
"""


class RelaybotError(Exception):
    """Base class for all relaybot errors."""


class ActionNotFound(RelaybotError):
    """No action with the requested name exists in the catalog."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Action {name} not found")
        self.name = name


class PermissionDenied(RelaybotError):
    """Caller lacks the admin or master permission an action requires."""


class CapabilityNotGranted(RelaybotError):
    """An action used a capability its permissions did not request."""


class ToolExecutionError(RelaybotError):
    """An action implementation failed; the model gets the message back."""


class ArgumentParseError(ToolExecutionError):
    """Tool-call arguments were not a valid JSON object."""


class CompletionServiceError(RelaybotError):
    """The completion service could not be reached or returned an error."""


class AudioConversionError(RelaybotError):
    """ffmpeg could not transcode an audio block."""
