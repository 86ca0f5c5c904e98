"""Public library API for termagent: Session class and Result dataclass."""

import functools
from dataclasses import dataclass

import tiktoken

from . import fmt
from .agent import Agent, LoopState, build_system_prompt
from .backend import LiteLLMBackend, resolve_provider, to_messages
from .conversation import AssistantTurn, Usage
from .events import Event
from .gate import Approver
from .tools import DEFAULT_TIMEOUT
from .truncate import MAX_RESULT_LENGTH


@functools.lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(conversation, system_prompt: str | None = None) -> int:
    """Count tokens across the conversation's chat messages using tiktoken."""
    total = 0
    for m in to_messages(system_prompt, conversation):
        total += len(_encoder().encode(m.get("content") or ""))
        for tc in m.get("tool_calls") or []:
            total += len(_encoder().encode(tc["function"]["name"]))
            total += len(_encoder().encode(tc["function"]["arguments"]))
    return total


@dataclass
class UsageTotals:
    """Running sum of the usage reported by each inference."""

    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, usage: Usage) -> None:
        self.calls += 1
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens


@dataclass
class Result:
    """Result of one ask() call."""

    answer: str | None
    state: LoopState
    usage: UsageTotals


class _SpinnerBackend:
    """Show a spinner while a non-streaming inference is in flight."""

    def __init__(self, backend):
        self.backend = backend

    def infer(self, request, on_delta=None):
        if on_delta is not None:
            return self.backend.infer(request, on_delta)
        with fmt.llm_spinner():
            return self.backend.infer(request, on_delta)


class Session:
    """Programmatic interface to the termagent loop.

    Resolves the provider, builds the backend and the Agent, and wires the
    agent's events to terminal output when verbose. Call .ask() repeatedly
    for a multi-turn conversation and .reset() to start over.
    """

    def __init__(
        self,
        *,
        provider: str = "anthropic",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 8192,
        temperature: float | None = None,
        max_turns: int = 0,
        system_prompt: str | None = None,
        base_dir: str = ".",
        approver: Approver | None = None,
        stream: bool = True,
        command_timeout: int = DEFAULT_TIMEOUT,
        max_result_length: int = MAX_RESULT_LENGTH,
        verbose: bool = False,
        backend=None,
    ):
        self.verbose = verbose
        self.stream = stream
        self.usage = UsageTotals()

        if backend is None:
            settings = resolve_provider(provider, model, api_key, base_url)
            backend = LiteLLMBackend(
                settings,
                max_output_tokens=max_output_tokens,
                temperature=temperature,
                stream=stream,
            )
            if verbose:
                fmt.info(f"Model: {settings.model}")
        if verbose and not stream:
            backend = _SpinnerBackend(backend)

        self.agent = Agent(
            backend,
            system_prompt=build_system_prompt(system_prompt, base_dir),
            approver=approver,
            base_dir=base_dir,
            command_timeout=command_timeout,
            max_result_length=max_result_length,
            max_rounds=max_turns or None,
        )
        self._pending_text: list[str] = []
        self._usage_seen = False
        self._subscribe()

    @property
    def streamed(self) -> bool:
        """True when assistant text is rendered live as it arrives."""
        return self.verbose and self.stream

    def _subscribe(self) -> None:
        events = self.agent.events
        events.subscribe(Event.USAGE, self._on_usage)
        if not self.verbose:
            return
        if self.stream:
            events.subscribe(Event.DELTA, fmt.assistant_delta)
            events.subscribe(Event.TEXT, lambda _text: fmt.assistant_delta_end())
        else:
            events.subscribe(Event.TEXT, self._pending_text.append)
        events.subscribe(Event.TOOL_USE, self._on_tool_use)
        events.subscribe(Event.TOOL_RESULT, self._on_tool_result)

    def _on_usage(self, usage: Usage) -> None:
        self._usage_seen = True
        self.usage.add(usage)
        if self.verbose:
            fmt.usage(usage)

    def _on_tool_use(self, name: str, arguments) -> None:
        # Text that precedes a tool call is commentary, not the answer.
        for text in self._pending_text:
            fmt.assistant_text(text)
        self._pending_text.clear()
        fmt.tool_call(name, arguments)

    def _on_tool_result(self, name: str, result: str) -> None:
        if result.startswith("Error:"):
            fmt.tool_error(name, result.removeprefix("Error:").strip())
        else:
            fmt.tool_result(name, result)

    def ask(self, question: str) -> Result:
        """Send one user message and run the loop to completion.

        BackendError propagates to the caller.
        """
        self._pending_text.clear()
        self._usage_seen = False
        state = self.agent.send_message(question)

        if self.verbose and not self._usage_seen:
            fmt.context_stats(
                "Context (estimated)",
                estimate_tokens(self.agent.conversation, self.agent.system_prompt),
            )

        answer = None
        last = self.agent.conversation[-1]
        if isinstance(last, AssistantTurn) and last.text:
            answer = last.text
        return Result(answer=answer, state=state, usage=self.usage)

    def reset(self) -> None:
        """Clear the conversation; usage totals are kept for the session."""
        self.agent.reset()
        self._pending_text.clear()
