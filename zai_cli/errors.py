"""Exception taxonomy shared by the agent loop, tools and MCP client."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad transport, etc.)."""


class AgentBusyError(AgentError):
    """Raised when a submission is started while another one is in flight."""


class ModelChannelError(AgentError):
    """The connection to the language model failed; fatal to one submission."""


class ContextOverflowError(ModelChannelError):
    """Raised when the LLM call fails due to context window overflow."""


class ToolArgumentError(AgentError):
    """Tool-call arguments could not be parsed or are invalid."""


class McpConnectionError(AgentError):
    """Transport-level failure talking to one MCP server."""

    def __init__(self, server: str, message: str):
        super().__init__(f"MCP server {server!r}: {message}")
        self.server = server


class TransportIncompatibleError(McpConnectionError):
    """The transport cannot carry request/response calls."""
