"""relaybot: chat agent core bridging a messaging transport and an LLM with tool calling."""

__version__ = "0.1.0"
