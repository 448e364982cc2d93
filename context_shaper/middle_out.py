"""Middle-out truncation: keep the head and tail of a text, drop the interior."""

MIDDLE_OUT_MARKER = "\n…[middle omitted]…\n"

# Characters kept around the marker when the budget is smaller than the marker.
MIN_KEPT_CHARS = 2


def middle_out(text: str | None, max_chars: int) -> str | None:
    """Compress ``text`` to roughly ``max_chars`` characters.

    Text that already fits is returned unchanged. Otherwise the interior is
    replaced by ``MIDDLE_OUT_MARKER`` and the remaining budget is split evenly
    between head and tail, the head taking the extra character when odd.
    When the marker would not make the text shorter, a plain head cut is
    returned instead.

    Args:
        text: Text to compress (``None`` passes through)
        max_chars: Target length in characters

    Returns:
        The compressed text
    """
    if text is None:
        return None
    if len(text) <= max_chars:
        return text

    kept = max(max_chars - len(MIDDLE_OUT_MARKER), MIN_KEPT_CHARS)
    if kept + len(MIDDLE_OUT_MARKER) >= len(text):
        return text[: max(0, max_chars)]

    head_chars = (kept + 1) // 2
    tail_chars = kept - head_chars
    return text[:head_chars] + MIDDLE_OUT_MARKER + text[len(text) - tail_chars:]


def head_cut(text: str | None, max_chars: int) -> str | None:
    """Keep the first ``max_chars`` characters of ``text``."""
    if text is None or len(text) <= max_chars:
        return text
    return text[: max(0, max_chars)]
