"""ANSI-formatted stderr output using Rich."""

import json

from rich.console import Console
from rich.text import Text

_console = Console(stderr=True)

PREVIEW_LINES = 3
PREVIEW_WIDTH = 120


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def _preview(text: str) -> str:
    lines = text.splitlines()
    shown = [
        line if len(line) <= PREVIEW_WIDTH else line[: PREVIEW_WIDTH - 3] + "..."
        for line in lines[:PREVIEW_LINES]
    ]
    if len(lines) > PREVIEW_LINES:
        shown.append(f"... ({len(lines) - PREVIEW_LINES} more lines)")
    return "\n    ".join(shown)


def llm_spinner(label: str = "Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


# -- Conversation text -------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


def assistant_delta(delta: str) -> None:
    _console.print(Text(delta), end="", soft_wrap=True)


def assistant_delta_end() -> None:
    _console.print()


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, arguments) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if arguments:
        args_json = json.dumps(arguments, indent=2, ensure_ascii=False)
        for line in _preview(args_json).splitlines():
            _console.print(Text(f"    {line.strip()}", style="dim"))


def tool_result(name: str, result: str) -> None:
    _console.print(Text(f"  ✓ {name}", style="green"))
    if result:
        _console.print(Text(f"    {_preview(result)}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def confirmation_request(name: str, arguments) -> None:
    line = Text()
    line.append("  ? ", style="bold yellow")
    line.append(f"{name} wants to run with:", style="yellow")
    _console.print(line)
    for key, value in (arguments or {}).items():
        _console.print(Text(f"    {key}: {_preview(str(value))}", style="dim"))


# -- Usage -------------------------------------------------------------------


def usage(usage) -> None:
    _console.print(
        Text(
            f"  tokens: {usage.input_tokens} in, {usage.output_tokens} out",
            style="dim",
        )
    )


def usage_summary(totals) -> None:
    _console.print(
        Text(
            f"  Session: {totals.calls} LLM calls, "
            f"{totals.input_tokens} input tokens, "
            f"{totals.output_tokens} output tokens",
            style="dim",
        )
    )


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )
