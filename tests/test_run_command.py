"""Tests for the run_command tool."""

import sys
import time

import pytest

from termagent import tools
from termagent.tools import ToolContext, _run_command, dispatch

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell semantics")


@pytest.fixture
def tmp_base(tmp_path):
    """Provide a temporary base directory."""
    return str(tmp_path)


def test_success_returns_output(tmp_base):
    assert _run_command("echo hello", tmp_base) == "hello\n"


def test_runs_in_base_dir(tmp_path):
    (tmp_path / "marker.txt").write_text("")
    assert "marker.txt" in _run_command("ls", str(tmp_path))


def test_stderr_is_merged(tmp_base):
    result = _run_command("echo out; echo err >&2", tmp_base)
    assert "out" in result
    assert "err" in result


def test_nonzero_exit_with_output(tmp_base):
    result = _run_command("echo oops; exit 42", tmp_base)
    assert "oops" in result
    assert result.endswith("[Exit code: 42]")


def test_success_without_output(tmp_base):
    assert _run_command("true", tmp_base) == "Command executed successfully (no output)."


def test_failure_without_output(tmp_base):
    assert _run_command("exit 3", tmp_base) == "Command failed with exit code 3 (no output)."


def test_pipes_and_shell_syntax(tmp_base):
    assert _run_command("printf 'b\\na\\n' | sort", tmp_base) == "a\nb\n"


def test_timeout_reports_and_returns(tmp_base):
    start = time.monotonic()
    result = _run_command("echo started; sleep 30", tmp_base, timeout=1)
    assert time.monotonic() - start < 15
    assert "started" in result
    assert result.endswith("[Timed out after 1s]")


def test_timeout_covers_background_child_holding_output(tmp_base):
    start = time.monotonic()
    result = _run_command("sleep 30 & echo started", tmp_base, timeout=1)
    assert time.monotonic() - start < 5
    assert "started" in result
    assert result.endswith("[Timed out after 1s]")


def test_timeout_kills_whole_process_group(tmp_path):
    marker = tmp_path / "survived"
    # The background child would create the marker if it outlived the kill.
    _run_command(f"(sleep 2; touch {marker}) & sleep 30", str(tmp_path), timeout=1)
    time.sleep(3)
    assert not marker.exists()


def test_timeout_is_clamped(tmp_base):
    assert _run_command("echo hi", tmp_base, timeout=0) == "hi\n"
    assert _run_command("echo hi", tmp_base, timeout=99999) == "hi\n"


def test_invalid_timeout(tmp_base):
    result = _run_command("echo hi", tmp_base, timeout="soon")
    assert result.startswith("Error: timeout must be an integer")


def test_output_cap(tmp_base, monkeypatch):
    monkeypatch.setattr(tools, "MAX_OUTPUT_BYTES", 1000)
    result = _run_command("yes x | head -c 50000", tmp_base)
    assert result.endswith("[output truncated at 100KB]")
    assert len(result) < 2000


def test_dispatch_uses_context_timeout(tmp_base):
    ctx = ToolContext(base_dir=tmp_base, command_timeout=1)
    result = dispatch("run_command", {"command": "sleep 30"}, ctx)
    assert "[Timed out after 1s]" in result


def test_dispatch_explicit_timeout_wins(tmp_base):
    ctx = ToolContext(base_dir=tmp_base, command_timeout=1)
    result = dispatch("run_command", {"command": "sleep 2; echo done", "timeout": 10}, ctx)
    assert result == "done\n"
