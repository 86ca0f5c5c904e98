"""Confirmation gate for tools that change files or run commands."""

from typing import Any, Callable, Mapping

from .tools import DESTRUCTIVE_TOOLS

Approver = Callable[[str, Mapping[str, Any]], bool]

DENIED_RESULT = "Tool execution denied by user."


class ConfirmationGate:
    """Ask an external approver before a destructive tool runs.

    Without an approver every call is allowed (headless mode). Read-only
    tools never reach the approver.
    """

    def __init__(
        self,
        approver: Approver | None = None,
        destructive: frozenset[str] = DESTRUCTIVE_TOOLS,
    ):
        self.approver = approver
        self.destructive = destructive

    def requires_confirmation(self, tool_name: str) -> bool:
        return self.approver is not None and tool_name in self.destructive

    def should_run(self, tool_name: str, arguments: Mapping[str, Any]) -> bool:
        if not self.requires_confirmation(tool_name):
            return True
        return bool(self.approver(tool_name, arguments))
