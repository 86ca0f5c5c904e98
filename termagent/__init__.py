"""A terminal coding agent: a tool-calling loop over file and shell tools."""

from .agent import Agent, LoopState
from .errors import AgentError, BackendError, ConfigError, ConversationError

__all__ = [
    "Agent",
    "LoopState",
    "AgentError",
    "BackendError",
    "ConfigError",
    "ConversationError",
]
