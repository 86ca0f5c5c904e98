"""Exception hierarchy shared by the agent loop, backends and config loading."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, missing API key, etc.)."""


class BackendError(AgentError):
    """Raised when an inference call fails (network, auth, rate limit, bad stream)."""


class ConversationError(AgentError):
    """Raised when an append would leave a tool call without its result."""
