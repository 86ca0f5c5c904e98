"""Provider-neutral conversation model shared by the agent loop and backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, Union

from .errors import ConversationError


@dataclass(frozen=True)
class TextPart:
    """One assistant text fragment."""

    text: str


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    `arguments_error` is set when the backend sent arguments that could not
    be decoded; `arguments` is then empty.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    arguments_error: str | None = None


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    name: str
    content: str


@dataclass(frozen=True)
class Usage:
    input_tokens: int
    output_tokens: int


Part = Union[TextPart, ToolCall]


@dataclass(frozen=True)
class UserTurn:
    text: str


@dataclass(frozen=True)
class AssistantTurn:
    """An assistant reply, kept verbatim: text and tool calls in model order."""

    parts: tuple[Part, ...]

    @property
    def text_parts(self) -> list[TextPart]:
        return [p for p in self.parts if isinstance(p, TextPart)]

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [p for p in self.parts if isinstance(p, ToolCall)]

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.text_parts)


@dataclass(frozen=True)
class ToolResultTurn:
    """All results answering one assistant turn, in call order."""

    results: tuple[ToolResult, ...]


Turn = Union[UserTurn, AssistantTurn, ToolResultTurn]


@dataclass
class AssistantResponse:
    """Normalized reply from a backend."""

    parts: list[Part]
    usage: Usage | None = None
    finish_reason: str | None = None


class Conversation:
    """Append-only sequence of turns.

    A ToolResultTurn may only follow the AssistantTurn whose tool calls it
    answers, with exactly the same call ids in the same order, and nothing
    else may follow an AssistantTurn until its tool calls are answered.
    """

    def __init__(self):
        self._turns: list[Turn] = []

    def append(self, turn: Turn) -> None:
        last = self._turns[-1] if self._turns else None
        if not isinstance(turn, ToolResultTurn):
            if isinstance(last, AssistantTurn) and last.tool_calls:
                raise ConversationError(
                    f"tool calls {[c.id for c in last.tool_calls]} have no results"
                )
        else:
            if not isinstance(last, AssistantTurn):
                raise ConversationError(
                    "tool results must follow an assistant turn with tool calls"
                )
            expected = [c.id for c in last.tool_calls]
            got = [r.call_id for r in turn.results]
            if expected != got:
                raise ConversationError(
                    f"tool results {got} do not answer tool calls {expected}"
                )
        self._turns.append(turn)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __getitem__(self, index):
        return self._turns[index]

    def snapshot(self) -> tuple[Turn, ...]:
        return tuple(self._turns)
