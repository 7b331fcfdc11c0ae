"""Text helpers including the heading-aware recursive chunker."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, List, Sequence

_HEADING_RE = re.compile(r"^#{1,6}[ \t]", re.MULTILINE)

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", "")


@dataclass(slots=True, frozen=True)
class TextSpan:
    """Chunk text plus its ``[start, end)`` offsets in the source string."""

    text: str
    start: int
    end: int


def _fixed_windows(start: int, end: int, max_chars: int, overlap: int) -> Iterator[tuple[int, int]]:
    step = max(max_chars - overlap, 1)
    for window_start in range(start, end, step):
        window_end = min(window_start + max_chars, end)
        yield window_start, window_end
        if window_end >= end:
            return


def _pieces(text: str, start: int, end: int, separator: str) -> List[tuple[int, int]]:
    """Split ``text[start:end]`` after each separator, keeping the separator attached."""
    pieces: List[tuple[int, int]] = []
    cursor = start
    while cursor < end:
        found = text.find(separator, cursor, end)
        if found == -1:
            pieces.append((cursor, end))
            break
        piece_end = found + len(separator)
        pieces.append((cursor, piece_end))
        cursor = piece_end
    return pieces


def _split_span(
    text: str,
    start: int,
    end: int,
    max_chars: int,
    overlap: int,
    separators: Sequence[str],
) -> List[tuple[int, int]]:
    if end - start <= max_chars:
        return [(start, end)]

    separator, remaining = separators[0], separators[1:]
    if not separator:
        return list(_fixed_windows(start, end, max_chars, overlap))

    pieces = _pieces(text, start, end, separator)
    if len(pieces) == 1:
        return _split_span(text, start, end, max_chars, overlap, remaining or ("",))

    spans: List[tuple[int, int]] = []
    window: List[tuple[int, int]] = []

    def flush() -> None:
        spans.append((window[0][0], window[-1][1]))
        # Carry trailing pieces forward while they fit inside the overlap budget.
        carried: List[tuple[int, int]] = []
        size = 0
        for piece in reversed(window[1:]):
            size += piece[1] - piece[0]
            if size > overlap:
                break
            carried.insert(0, piece)
        window[:] = carried

    for piece in pieces:
        length = piece[1] - piece[0]
        if length > max_chars:
            if window:
                spans.append((window[0][0], window[-1][1]))
                window.clear()
            spans.extend(_split_span(text, piece[0], piece[1], max_chars, overlap, remaining or ("",)))
            continue
        if window and piece[1] - window[0][0] > max_chars:
            flush()
            while window and piece[1] - window[0][0] > max_chars:
                window.pop(0)
        window.append(piece)

    if window:
        spans.append((window[0][0], window[-1][1]))
    return spans


def split_recursive(
    text: str,
    *,
    max_chars: int,
    overlap: int = 0,
    start: int = 0,
    end: int | None = None,
    separators: Sequence[str] = DEFAULT_SEPARATORS,
) -> List[TextSpan]:
    """Split a region using the separator cascade blank line, newline, fixed width."""
    end = len(text) if end is None else end
    if start >= end:
        return []
    return [TextSpan(text[s:e], s, e) for s, e in _split_span(text, start, end, max_chars, overlap, separators)]


def section_bounds(text: str, start: int = 0, end: int | None = None) -> List[tuple[int, int]]:
    """Heading-delimited sections of ``text[start:end]``; a preamble counts as a section."""
    end = len(text) if end is None else end
    heads = [match.start() for match in _HEADING_RE.finditer(text, start, end)]
    if not heads:
        return []
    boundaries = ([start] if heads[0] > start else []) + heads + [end]
    return [(a, b) for a, b in zip(boundaries, boundaries[1:]) if b > a]


def segment_document(
    text: str,
    *,
    max_chars: int = 1000,
    overlap: int = 100,
    start: int = 0,
) -> List[TextSpan]:
    """Split a document body into ordered chunks along semantic boundaries.

    Offsets are absolute positions in ``text``; ``start`` lets callers skip a
    frontmatter block. Whitespace-only regions produce no chunks.
    """
    if start >= len(text) or not text[start:].strip():
        return []

    sections = section_bounds(text, start) or [(start, len(text))]
    spans: List[TextSpan] = []
    for section_start, section_end in sections:
        for span in split_recursive(
            text, max_chars=max_chars, overlap=overlap, start=section_start, end=section_end
        ):
            if span.text.strip():
                spans.append(span)
    return spans


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Cheap token estimate from character length."""
    if not text:
        return 0
    return -(-len(text) // chars_per_token)
