import argparse
import sys
from datetime import datetime
from enum import Enum
from importlib import metadata
from pathlib import Path

from . import fmt
from .backend import PROVIDERS, Backend, InferenceRequest
from .config import _UNSET
from .conversation import (
    AssistantTurn,
    Conversation,
    TextPart,
    ToolCall,
    ToolResult,
    ToolResultTurn,
    UserTurn,
)
from .errors import AgentError
from .events import Event, EventBus
from .gate import DENIED_RESULT, Approver, ConfirmationGate
from .tools import DEFAULT_TIMEOUT, HANDLERS, TOOL_SPECS, ToolContext, dispatch
from .truncate import MAX_RESULT_LENGTH, truncate

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"

INTERRUPTED_RESULT = "Error: interrupted before this tool call completed"


class LoopState(str, Enum):
    AWAITING_INFERENCE = "awaiting_inference"
    DISPATCHING_TOOLS = "dispatching_tools"
    DONE = "done"
    ROUND_LIMIT = "round_limit"


def build_system_prompt(system_prompt: str | None = None, base_dir: str = ".") -> str:
    """Return the system prompt with the current date and working directory."""
    if system_prompt is None:
        system_prompt = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    now = datetime.now().astimezone()
    return (
        f"{system_prompt.rstrip()}\n\n"
        f"Current date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}\n"
        f"Current working directory: {Path(base_dir).resolve()}\n"
    )


class Agent:
    """Drive user messages through the inference / tool-dispatch loop.

    Per message the loop alternates between AWAITING_INFERENCE and
    DISPATCHING_TOOLS until the model answers without tool calls (DONE),
    or, when max_rounds is set, until that many tool rounds have run
    (ROUND_LIMIT). Tool calls of one reply run sequentially in model order
    and all their results are appended as a single turn before the next
    inference.

    Observers subscribe through `events` (see `termagent.events.Event`).
    """

    def __init__(
        self,
        backend: Backend,
        *,
        system_prompt: str | None = None,
        tools: list[dict] | None = None,
        approver: Approver | None = None,
        base_dir: str = ".",
        command_timeout: int = DEFAULT_TIMEOUT,
        max_result_length: int = MAX_RESULT_LENGTH,
        max_rounds: int | None = None,
    ):
        self.backend = backend
        self.system_prompt = system_prompt
        self.tools = list(TOOL_SPECS) if tools is None else tools
        self.gate = ConfirmationGate(approver)
        self.tool_context = ToolContext(base_dir=base_dir, command_timeout=command_timeout)
        self.max_result_length = max_result_length
        self.max_rounds = max_rounds
        self.events = EventBus()
        self.conversation = Conversation()
        self.state = LoopState.DONE

    def reset(self) -> None:
        """Start a fresh conversation."""
        self.conversation = Conversation()
        self.state = LoopState.DONE

    def send_message(self, text: str) -> LoopState:
        """Run one user message to completion. Returns the terminal state.

        Backend errors propagate; turns appended before the failure stay in
        the conversation.
        """
        self.conversation.append(UserTurn(text))
        rounds = 0

        while True:
            self.state = LoopState.AWAITING_INFERENCE
            on_delta = None
            if self.events.has_subscribers(Event.DELTA):
                on_delta = lambda delta: self.events.emit(Event.DELTA, delta)  # noqa: E731

            response = self.backend.infer(
                InferenceRequest(
                    conversation=self.conversation.snapshot(),
                    system_prompt=self.system_prompt,
                    tools=self.tools,
                ),
                on_delta,
            )

            if response.usage is not None:
                self.events.emit(Event.USAGE, response.usage)

            turn = AssistantTurn(tuple(response.parts))
            self.conversation.append(turn)
            calls = turn.tool_calls
            results: list[ToolResult] = []

            try:
                for part in turn.parts:
                    if isinstance(part, TextPart):
                        self.events.emit(Event.TEXT, part.text)

                if not calls:
                    self.state = LoopState.DONE
                    return self.state

                self.state = LoopState.DISPATCHING_TOOLS
                for call in calls:
                    results.append(self._run_tool_call(call))
            except BaseException:
                # Ctrl-C or a failing observer: every call still gets a
                # result so the conversation can continue.
                if calls:
                    results += [
                        ToolResult(call_id=c.id, name=c.name, content=INTERRUPTED_RESULT)
                        for c in calls[len(results) :]
                    ]
                    self.conversation.append(ToolResultTurn(tuple(results)))
                self.state = LoopState.DONE
                raise

            self.conversation.append(ToolResultTurn(tuple(results)))

            rounds += 1
            if self.max_rounds is not None and rounds >= self.max_rounds:
                self.state = LoopState.ROUND_LIMIT
                return self.state

    def _run_tool_call(self, call: ToolCall) -> ToolResult:
        self.events.emit(Event.TOOL_USE, call.name, call.arguments)
        content = truncate(self._execute(call), self.max_result_length)
        self.events.emit(Event.TOOL_RESULT, call.name, content)
        return ToolResult(call_id=call.id, name=call.name, content=content)

    def _execute(self, call: ToolCall) -> str:
        if call.arguments_error is not None:
            return f"Error: could not parse arguments for '{call.name}': {call.arguments_error}"
        if call.name not in HANDLERS:
            return f"Error: Unknown tool: '{call.name}'"
        if not self.gate.should_run(call.name, call.arguments):
            return DENIED_RESULT
        try:
            return dispatch(call.name, call.arguments, self.tool_context)
        except KeyError as e:
            return f"Error: missing required argument {e}"
        except Exception as e:
            return f"Error: {e}"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Options that can also come from a config file default to _UNSET so
    apply_config_to_args() can tell "not given" from "given the default".
    """
    parser = argparse.ArgumentParser(
        prog="termagent",
        usage="%(prog)s [options] [question]",
        description="A terminal coding agent that reads, searches and edits files and runs commands.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Answer this question and exit. Without it, start an interactive session.",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Stay interactive after answering the question.",
    )
    parser.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help="LLM provider (default: anthropic).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default depends on the provider).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (e.g. a proxy, or LM Studio's address).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: 8192).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum tool rounds per question, 0 for unlimited (default: 0).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Directory the tools work in (default: current directory).",
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        default=_UNSET,
        help="Run file writes, edits and commands without asking for confirmation.",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        default=_UNSET,
        help="Wait for complete responses instead of streaming text.",
    )
    parser.add_argument(
        "--command-timeout",
        type=int,
        default=_UNSET,
        help=f"Default run_command timeout in seconds (default: {DEFAULT_TIMEOUT}).",
    )
    parser.add_argument(
        "--max-result-length",
        type=int,
        default=_UNSET,
        help=f"Truncate tool results above this many characters (default: {MAX_RESULT_LENGTH}).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only print the final answer.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project template instead of the global one.",
    )
    return parser


def make_approver():
    """Ask on the terminal before a destructive tool runs.

    Without a TTY there is nobody to ask, so the call is denied.
    """

    def _approve(name: str, arguments) -> bool:
        if not sys.stdin.isatty():
            fmt.warning(f"{name} denied: no terminal to confirm on (use --yolo)")
            return False
        from prompt_toolkit.shortcuts import confirm

        fmt.confirmation_request(name, arguments)
        try:
            return confirm(f"Allow {name}?")
        except (EOFError, KeyboardInterrupt):
            return False

    return _approve


def main():
    from .config import apply_config_to_args, generate_config, load_config
    from .session import Session

    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("termagent")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)

    if not Path(args.base_dir).is_dir():
        parser.error(f"--base-dir is not a directory: {args.base_dir}")
    if args.max_turns < 0:
        parser.error("--max-turns must be >= 0")
    if args.command_timeout < 1:
        parser.error("--command-timeout must be >= 1")
    if args.max_result_length < 1:
        parser.error("--max-result-length must be >= 1")

    try:
        session = Session(
            provider=args.provider,
            model=args.model,
            api_key=args.api_key,
            base_url=args.base_url,
            max_output_tokens=args.max_output_tokens,
            temperature=args.temperature,
            max_turns=args.max_turns,
            system_prompt=args.system_prompt,
            base_dir=args.base_dir,
            approver=None if args.yolo else make_approver(),
            stream=not args.no_stream,
            command_timeout=args.command_timeout,
            max_result_length=args.max_result_length,
            verbose=args.verbose,
        )
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)

    if args.question is not None and not args.repl:
        try:
            result = session.ask(args.question)
        except AgentError as e:
            fmt.error(str(e))
            sys.exit(1)
        if result.answer:
            print(result.answer)
        if args.verbose:
            fmt.usage_summary(session.usage)
        if result.state is LoopState.ROUND_LIMIT:
            fmt.warning("max turns reached, agent stopped.")
            sys.exit(2)
        return

    repl_loop(session, args.question, verbose=args.verbose)


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help          Show this help message\n"
        "  /clear         Start a new conversation\n"
        "  /usage         Show token usage for this session\n"
        "  /exit, /quit   Exit the REPL"
    )


def _repl_ask(session, question: str) -> None:
    try:
        result = session.ask(question)
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
        return
    except AgentError as e:
        # Backend failures are reported and the REPL keeps going.
        fmt.error(str(e))
        return
    if result.answer and not session.streamed:
        print(result.answer)
    if result.state is LoopState.ROUND_LIMIT:
        fmt.warning("max turns reached for this question.")


def repl_loop(session, question: str | None = None, *, verbose: bool = True) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import InMemoryHistory

    prompt_session = PromptSession(
        history=InMemoryHistory(),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansiblue", "You: ")])

    if verbose:
        fmt.repl_banner()

    if question:
        _repl_ask(session, question)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        # Only known commands are intercepted; anything else goes to the model.
        if line in ("/exit", "/quit"):
            break
        if line == "/help":
            _repl_help()
            continue
        if line == "/clear":
            session.reset()
            fmt.info("conversation cleared")
            continue
        if line == "/usage":
            fmt.usage_summary(session.usage)
            continue

        _repl_ask(session, line)

    if verbose:
        fmt.usage_summary(session.usage)


if __name__ == "__main__":
    main()
