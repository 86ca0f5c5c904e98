"""Tool definitions and implementations for the agent.

Every handler takes the model's arguments and a ToolContext and returns a
string. Failures are reported as strings starting with "Error:" so they go
back to the model as ordinary tool results.
"""

import functools
import os
import shutil
import stat
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Callable

from .edit import replace

TOOL_SPECS = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read the contents of a file at the given path.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "The file path to read.",
                    },
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": (
                "Write content to a file. Creates the file if it doesn't exist, "
                "overwrites it if it does. Parent directories are created automatically."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "The file path to write to.",
                    },
                    "content": {
                        "type": "string",
                        "description": "The content to write to the file.",
                    },
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "edit_file",
            "description": (
                "Edit an existing file by replacing a specific section of text. "
                "The old text must match exactly and be unique within the file."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "The file path to edit.",
                    },
                    "old_text": {
                        "type": "string",
                        "description": (
                            "The existing text to find and replace. "
                            "Must match exactly and be unique in the file."
                        ),
                    },
                    "new_text": {
                        "type": "string",
                        "description": "The text to replace the old text with.",
                    },
                },
                "required": ["path", "old_text", "new_text"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_directory",
            "description": (
                "List the entries of a directory, sorted case-insensitively. "
                "Subdirectories have a trailing /."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Directory to list. Defaults to the working directory.",
                        "default": ".",
                    },
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "find_files",
            "description": (
                "Find files by name using a glob pattern (e.g. '*.py'). "
                "Version control and dependency directories are skipped. "
                "Returns paths relative to the search directory."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "Glob matched against file names.",
                    },
                    "path": {
                        "type": "string",
                        "description": "Directory to search in. Defaults to the working directory.",
                        "default": ".",
                    },
                },
                "required": ["pattern"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "grep",
            "description": (
                "Search file contents for a regex pattern. Returns matching lines "
                "with file paths and line numbers. Supports an optional file glob filter."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "Regular expression to search for.",
                    },
                    "path": {
                        "type": "string",
                        "description": "Directory or file to search. Defaults to the working directory.",
                        "default": ".",
                    },
                    "include": {
                        "type": "string",
                        "description": "Only search files matching this glob (e.g. '*.ts').",
                    },
                },
                "required": ["pattern"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": (
                "Execute a bash command in the terminal. Use this to run scripts, "
                "install dependencies, run tests, or check system status. "
                "Returns both standard output and standard error."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The full shell command to execute, e.g. 'ls -la' or 'git status'.",
                    },
                    "timeout": {
                        "type": "integer",
                        "description": "Timeout in seconds. Defaults to 30.",
                        "default": 30,
                    },
                },
                "required": ["command"],
            },
        },
    },
]

DESTRUCTIVE_TOOLS = frozenset({"write_file", "edit_file", "run_command"})

MAX_OUTPUT_BYTES = 100 * 1024  # 100 KB
DEFAULT_TIMEOUT = 30
MAX_TIMEOUT = 600
FIND_TIMEOUT = 10
GREP_TIMEOUT = 15
MAX_FIND_RESULTS = 1000
MAX_GREP_MATCHES_PER_FILE = 100
MAX_GREP_LINES = 500
EXCLUDED_DIRS = (".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv")


def _resolve(path: str, base_dir: str) -> Path:
    """Resolve path against base_dir. Absolute paths are used as-is."""
    return (Path(base_dir) / path).resolve()


def _os_error(exc: OSError, path: Path, what: str = "File") -> str:
    """Map an OSError to the standard tool error strings."""
    if isinstance(exc, FileNotFoundError):
        return f"Error: {what} '{path}' not found"
    if isinstance(exc, PermissionError):
        return f"Error: Permission denied for '{path}'"
    if isinstance(exc, IsADirectoryError):
        return f"Error: '{path}' is a directory"
    return f"Error: {exc.strerror or exc}"


def _relativize(line: str, root: Path) -> str:
    prefix = str(root) + os.sep
    return line[len(prefix) :] if line.startswith(prefix) else line


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


def _read_file(path: str, base_dir: str) -> str:
    resolved = _resolve(path, base_dir)
    try:
        return resolved.read_bytes().decode("utf-8")
    except UnicodeDecodeError as exc:
        return f"Error: failed to decode '{resolved}' as UTF-8: {exc.reason}"
    except OSError as exc:
        return _os_error(exc, resolved)


def _not_strings(**values) -> str | None:
    """Return an error for the first argument that is not a string."""
    for name, value in values.items():
        if not isinstance(value, str):
            return f"Error: '{name}' must be a string"
    return None


def _write_file(path: str, content: str, base_dir: str) -> str:
    if error := _not_strings(content=content):
        return error
    resolved = _resolve(path, base_dir)
    data = content.encode("utf-8")
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_bytes(data)
    except OSError as exc:
        return _os_error(exc, resolved)
    return f"Successfully wrote {len(data)} bytes to {resolved}"


def _edit_file(path: str, old_text: str, new_text: str, base_dir: str) -> str:
    if error := _not_strings(old_text=old_text, new_text=new_text):
        return error
    resolved = _resolve(path, base_dir)
    try:
        # Bytes in, bytes out: line endings are left exactly as they were.
        content = resolved.read_bytes().decode("utf-8")
    except UnicodeDecodeError as exc:
        return f"Error: failed to decode '{resolved}' as UTF-8: {exc.reason}"
    except OSError as exc:
        return _os_error(exc, resolved)

    try:
        updated = replace(content, old_text, new_text)
    except ValueError as exc:
        reason = str(exc)
        if reason == "not found":
            return f"Error: Could not find the specified text in '{resolved}'"
        if reason == "multiple matches":
            return (
                f"Error: Found multiple matches for the specified text in '{resolved}'. "
                "Provide more context to make the match unique."
            )
        return f"Error: {reason}"

    try:
        resolved.write_bytes(updated.encode("utf-8"))
    except OSError as exc:
        return _os_error(exc, resolved)
    return f"Successfully edited {resolved}"


def _list_directory(path: str, base_dir: str) -> str:
    resolved = _resolve(path, base_dir)
    # One stat answers both "does it exist" and "is it a directory".
    try:
        st = os.stat(resolved)
    except OSError as exc:
        return _os_error(exc, resolved, what="Path")
    if not stat.S_ISDIR(st.st_mode):
        return f"Error: Not a directory: '{resolved}'"

    try:
        names = os.listdir(resolved)
    except OSError as exc:
        return _os_error(exc, resolved, what="Path")
    names.sort(key=lambda n: (n.lower(), n))

    entries = []
    for name in names:
        try:
            is_dir = stat.S_ISDIR(os.stat(resolved / name).st_mode)
        except OSError:
            is_dir = False  # dangling symlink, vanished entry, ...
        entries.append(name + "/" if is_dir else name)

    if not entries:
        return "(empty directory)"
    return "\n".join(entries)


# ---------------------------------------------------------------------------
# Search tools
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=None)
def _find_executable(*candidates: str) -> str | None:
    """Return the first candidate found on PATH."""
    for name in candidates:
        found = shutil.which(name)
        if found:
            return found
    return None


def _run_search(argv: list[str], timeout: int) -> subprocess.CompletedProcess:
    return subprocess.run(
        argv,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        timeout=timeout,
    )


def _find_files(pattern: str, path: str, base_dir: str) -> str:
    root = _resolve(path, base_dir)
    if not root.is_dir():
        return f"Error: Not a directory: '{root}'"

    fd = _find_executable("fd", "fdfind")
    if fd:
        argv = [
            fd,
            "--glob",
            "--color=never",
            "--hidden",
            "--max-results",
            str(MAX_FIND_RESULTS + 1),
        ]
        for d in EXCLUDED_DIRS:
            argv += ["--exclude", d]
        argv += ["--", pattern, str(root)]
    else:
        find = _find_executable("find")
        if not find:
            return "Error: no file search tool available (install fd or find)"
        prune: list[str] = []
        for d in EXCLUDED_DIRS:
            prune += ["-o", "-name", d] if prune else ["-name", d]
        argv = [find, str(root), "(", *prune, ")", "-prune", "-o"]
        argv += ["-name", pattern, "-print"]

    try:
        proc = _run_search(argv, FIND_TIMEOUT)
    except subprocess.TimeoutExpired:
        return f"Error: file search timed out after {FIND_TIMEOUT}s"
    except OSError as exc:
        return f"Error: failed to run file search: {exc}"

    output = proc.stdout.decode("utf-8", errors="replace")
    if proc.returncode != 0 and not output.strip():
        stderr = proc.stderr.decode("utf-8", errors="replace").strip()
        return f"Error: file search failed: {stderr or f'exit code {proc.returncode}'}"

    results = [
        _relativize(line.rstrip("/"), root)
        for line in output.splitlines()
        if line.strip() and line.rstrip("/") != str(root)
    ]
    if not results:
        return "No files found matching pattern"
    results.sort()
    truncated = len(results) > MAX_FIND_RESULTS
    results = results[:MAX_FIND_RESULTS]
    text = "\n".join(results)
    if truncated:
        text += f"\n(Results truncated: showing first {MAX_FIND_RESULTS} files.)"
    return text


def _grep(pattern: str, path: str, base_dir: str, include: str | None = None) -> str:
    root = _resolve(path, base_dir)

    rg = _find_executable("rg")
    if rg:
        argv = [
            rg,
            "--color=never",
            "--line-number",
            "--with-filename",
            "--no-heading",
            f"--max-count={MAX_GREP_MATCHES_PER_FILE}",
        ]
        if include:
            argv += ["--glob", include]
        for d in EXCLUDED_DIRS:
            argv += ["--glob", f"!{d}"]
        argv += ["--", pattern, str(root)]
    else:
        grep = _find_executable("grep")
        if not grep:
            return "Error: no content search tool available (install ripgrep or grep)"
        argv = [grep, "-rnH", "-E", f"--max-count={MAX_GREP_MATCHES_PER_FILE}"]
        argv += [f"--exclude-dir={d}" for d in EXCLUDED_DIRS]
        if include:
            argv.append(f"--include={include}")
        argv += ["--", pattern, str(root)]

    try:
        proc = _run_search(argv, GREP_TIMEOUT)
    except subprocess.TimeoutExpired:
        return f"Error: search timed out after {GREP_TIMEOUT}s"
    except OSError as exc:
        return f"Error: failed to run search: {exc}"

    output = proc.stdout.decode("utf-8", errors="replace")
    # Exit status 1 means "no matches", anything above is a real failure.
    if proc.returncode == 1 or (proc.returncode == 0 and not output.strip()):
        return "No matches found"
    if proc.returncode > 1 and not output.strip():
        stderr = proc.stderr.decode("utf-8", errors="replace").strip()
        return f"Error: search failed: {stderr or f'exit code {proc.returncode}'}"

    lines = [_relativize(line, root) for line in output.splitlines() if line]
    truncated = len(lines) > MAX_GREP_LINES
    text = "\n".join(lines[:MAX_GREP_LINES])
    if truncated:
        text += (
            f"\n(Results truncated: showing first {MAX_GREP_LINES} matches. "
            "Use a more specific pattern or path.)"
        )
    return text


# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and every process in its group, then wait for exit.

    On Unix the command runs in its own session (start_new_session=True), so
    its pid is also its process group id. On Windows, taskkill /T walks the
    tree instead.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable; give up


def _capture_process(proc: subprocess.Popen, timeout: int) -> tuple[str, int, bool, bool]:
    """Drain a process's merged output with a wall-clock timeout.

    Returns (output, exit_code, timed_out, output_truncated).
    """
    chunks: list[bytes] = []
    total = 0
    truncated = False

    def _reader():
        nonlocal total, truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if truncated:
                    continue  # keep draining so the child never blocks on a full pipe
                remaining = MAX_OUTPUT_BYTES - total
                chunks.append(chunk[:remaining])
                total += len(chunks[-1])
                if total >= MAX_OUTPUT_BYTES:
                    truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()

    # One deadline covers the shell and any background child still holding
    # the pipe open after the shell has exited.
    deadline = time.monotonic() + timeout
    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
    if not timed_out:
        reader.join(timeout=max(0.0, deadline - time.monotonic()))
        timed_out = reader.is_alive()
    if timed_out:
        # The group id outlives the shell while its children are alive.
        _kill_process_tree(proc)

    reader.join(timeout=2)
    if not reader.is_alive():
        proc.stdout.close()

    output = b"".join(chunks).decode("utf-8", errors="replace")
    return output, proc.returncode, timed_out, truncated


def _shell_argv(command: str) -> list[str]:
    if sys.platform == "win32":
        return ["cmd.exe", "/c", command]
    bash = _find_executable("bash")
    return [bash, "-c", command] if bash else ["/bin/sh", "-c", command]


def _run_command(command: str, base_dir: str, timeout=DEFAULT_TIMEOUT) -> str:
    try:
        timeout = int(timeout)
    except (TypeError, ValueError):
        return f"Error: timeout must be an integer number of seconds, got {timeout!r}"
    timeout = max(1, min(timeout, MAX_TIMEOUT))

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(_shell_argv(command), **popen_kwargs)
    except OSError as exc:
        return f"Error: failed to start command: {exc}"

    output, exit_code, timed_out, truncated = _capture_process(proc, timeout)

    if truncated:
        output += "\n[output truncated at 100KB]"
    if timed_out:
        return f"{output}\n[Timed out after {timeout}s]"
    if not output.strip():
        if exit_code == 0:
            return "Command executed successfully (no output)."
        return f"Command failed with exit code {exit_code} (no output)."
    if exit_code != 0:
        return f"{output}\n[Exit code: {exit_code}]"
    return output


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolContext:
    """Per-agent settings shared by every handler call."""

    base_dir: str = "."
    command_timeout: int = DEFAULT_TIMEOUT


ToolHandler = Callable[[dict, ToolContext], str]

HANDLERS: "MappingProxyType[str, ToolHandler]" = MappingProxyType(
    {
        "read_file": lambda args, ctx: _read_file(args["path"], ctx.base_dir),
        "write_file": lambda args, ctx: _write_file(
            args["path"], args["content"], ctx.base_dir
        ),
        "edit_file": lambda args, ctx: _edit_file(
            args["path"], args["old_text"], args["new_text"], ctx.base_dir
        ),
        "list_directory": lambda args, ctx: _list_directory(
            args.get("path") or ".", ctx.base_dir
        ),
        "find_files": lambda args, ctx: _find_files(
            args["pattern"], args.get("path") or ".", ctx.base_dir
        ),
        "grep": lambda args, ctx: _grep(
            args["pattern"],
            args.get("path") or ".",
            ctx.base_dir,
            args.get("include") or None,
        ),
        "run_command": lambda args, ctx: _run_command(
            args["command"], ctx.base_dir, args.get("timeout") or ctx.command_timeout
        ),
    }
)


def dispatch(name: str, args: dict, context: ToolContext | None = None) -> str:
    """Route a tool call to its handler.

    Raises:
        KeyError: If the tool name is not registered, or a required
            argument is missing.
    """
    if name not in HANDLERS:
        raise KeyError(f"Unknown tool: {name!r}")
    return HANDLERS[name](args, context or ToolContext())
