"""Tests for the exact-match replacement engine and the edit_file tool."""

import pytest

from termagent.edit import count_occurrences, replace
from termagent.tools import _edit_file


# =========================================================================
# replace()
# =========================================================================


class TestReplace:
    def test_single_occurrence(self):
        assert replace("foo bar baz", "bar", "qux") == "foo qux baz"

    def test_multiline(self):
        content = "def f():\n    return 1\n"
        assert replace(content, "return 1", "return 2") == "def f():\n    return 2\n"

    def test_not_found(self):
        with pytest.raises(ValueError, match="not found"):
            replace("abc", "xyz", "q")

    def test_multiple_matches(self):
        with pytest.raises(ValueError, match="multiple matches"):
            replace("a = 1\na = 1\n", "a = 1", "a = 2")

    def test_empty_old_text(self):
        with pytest.raises(ValueError, match="must not be empty"):
            replace("abc", "", "x")

    def test_overlapping_occurrences_count_as_multiple(self):
        with pytest.raises(ValueError, match="multiple matches"):
            replace("aaa", "aa", "b")

    def test_match_is_literal_not_regex(self):
        assert replace("x = a.b(c)", "a.b(c)", "d") == "x = d"

    def test_delete_with_empty_new_text(self):
        assert replace("keep remove keep", " remove", "") == "keep keep"


class TestCountOccurrences:
    def test_stops_at_limit(self):
        assert count_occurrences("aaaaaa", "a", limit=2) == 2

    def test_zero(self):
        assert count_occurrences("abc", "z") == 0


# =========================================================================
# edit_file tool
# =========================================================================


class TestEditFileTool:
    def test_success(self, tmp_path):
        f = tmp_path / "a.txt"
        f.write_text("hello world\n")
        result = _edit_file("a.txt", "world", "there", str(tmp_path))
        assert result.startswith("Successfully edited")
        assert f.read_text() == "hello there\n"

    def test_preserves_crlf_line_endings(self, tmp_path):
        f = tmp_path / "win.txt"
        f.write_bytes(b"one\r\ntwo\r\nthree\r\n")
        _edit_file("win.txt", "two", "TWO", str(tmp_path))
        assert f.read_bytes() == b"one\r\nTWO\r\nthree\r\n"

    def test_not_found_text(self, tmp_path):
        f = tmp_path / "a.txt"
        f.write_text("hello\n")
        result = _edit_file("a.txt", "absent", "x", str(tmp_path))
        assert result.startswith("Error: Could not find the specified text in")
        assert f.read_text() == "hello\n"

    def test_multiple_matches_leaves_file_untouched(self, tmp_path):
        f = tmp_path / "a.txt"
        f.write_text("x\nx\n")
        result = _edit_file("a.txt", "x", "y", str(tmp_path))
        assert result.startswith("Error: Found multiple matches")
        assert "Provide more context to make the match unique." in result
        assert f.read_text() == "x\nx\n"

    def test_missing_file(self, tmp_path):
        result = _edit_file("nope.txt", "a", "b", str(tmp_path))
        assert result.startswith("Error: File '")
        assert result.endswith("not found")

    def test_empty_old_text(self, tmp_path):
        (tmp_path / "a.txt").write_text("abc")
        result = _edit_file("a.txt", "", "x", str(tmp_path))
        assert result == "Error: old_text must not be empty"

    def test_non_string_new_text(self, tmp_path):
        f = tmp_path / "a.txt"
        f.write_text("abc")
        result = _edit_file("a.txt", "b", None, str(tmp_path))
        assert result == "Error: 'new_text' must be a string"
        assert f.read_text() == "abc"
