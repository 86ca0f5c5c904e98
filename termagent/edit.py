"""String replacement engine for the edit_file tool.

Matching is exact and literal: the old text must occur exactly once. An
ambiguous match is reported to the caller rather than resolved by picking
one occurrence.
"""

from __future__ import annotations


def count_occurrences(content: str, old_text: str, limit: int = 2) -> int:
    """Count possibly overlapping occurrences of old_text, stopping at limit."""
    count = 0
    start = content.find(old_text)
    while start != -1 and count < limit:
        count += 1
        start = content.find(old_text, start + 1)
    return count


def replace(content: str, old_text: str, new_text: str) -> str:
    """Replace the single occurrence of old_text in content with new_text.

    Raises ValueError:
      - "old_text must not be empty" for an empty old_text
      - "not found" if old_text does not occur
      - "multiple matches" if old_text occurs more than once
    """
    if not old_text:
        raise ValueError("old_text must not be empty")

    found = count_occurrences(content, old_text)
    if found == 0:
        raise ValueError("not found")
    if found > 1:
        raise ValueError("multiple matches")

    index = content.find(old_text)
    return content[:index] + new_text + content[index + len(old_text) :]
