"""Bound tool output before it is fed back into the model's context."""

MAX_RESULT_LENGTH = 30_000
HEAD_RATIO = 2 / 3

_MARKER = "\n\n... [truncated: {omitted} characters omitted] ...\n\n"


def truncate(text: str, max_length: int = MAX_RESULT_LENGTH) -> str:
    """Keep the head and tail of text so the result fits in max_length.

    Two thirds of the budget left after the marker go to the head, the rest
    to the tail. The result is never longer than max_length, so applying
    truncate() twice gives the same string as applying it once.
    """
    if len(text) <= max_length:
        return text

    # The marker length depends on the omitted count, which depends on the
    # marker length. Iterate to the fixed point (at most a few steps).
    omitted = len(text) - max_length
    while True:
        marker = _MARKER.format(omitted=omitted)
        keep = max_length - len(marker)
        if keep <= 0:
            return text[:max_length]
        needed = len(text) - keep
        if needed == omitted:
            break
        omitted = needed

    head_len = int(keep * HEAD_RATIO)
    tail_len = keep - head_len
    head = text[:head_len]
    tail = text[len(text) - tail_len :] if tail_len else ""
    return f"{head}{marker}{tail}"
