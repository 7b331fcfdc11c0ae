"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, Iterator, Sequence

import numpy as np

from vaultgraph.utils.links import normalize_path


def iter_markdown_paths(
    root: Path, *, excluded_folders: Sequence[str] = ()
) -> Iterator[Path]:
    """Yield markdown files below ``root`` in a stable order, skipping excluded folders."""
    excluded = [normalize_path(folder).lower() for folder in excluded_folders if folder]
    for path in sorted(root.rglob("*.md")):
        if not path.is_file():
            continue
        relative = path.relative_to(root).as_posix().lower()
        if any(relative == folder or relative.startswith(folder + "/") for folder in excluded):
            continue
        yield path


def is_excluded(path: str, excluded_folders: Iterable[str]) -> bool:
    lowered = normalize_path(path).lower()
    for folder in excluded_folders:
        folder = normalize_path(folder).lower()
        if folder and (lowered == folder or lowered.startswith(folder + "/")):
            return True
    return False


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


ANCHOR_PREFIX = 4096


def anchor_hash(text: str) -> int:
    """32-bit DJB2-xor hash over the first 4096 characters, used as a content anchor."""
    value = 5381
    for char in text[:ANCHOR_PREFIX]:
        value = ((value * 33) ^ ord(char)) & 0xFFFFFFFF
    return value


def anchor_hashes(text: str, offsets: np.ndarray, length: int) -> np.ndarray:
    """:func:`anchor_hash` of ``text[o : o + length]`` for every offset ``o`` at once.

    Every window must lie inside ``text``.
    """
    codes = np.fromiter(map(ord, text), dtype=np.uint64, count=len(text))
    offsets = np.asarray(offsets, dtype=np.intp)
    values = np.full(len(offsets), 5381, dtype=np.uint64)
    for k in range(min(length, ANCHOR_PREFIX)):
        values = ((values * np.uint64(33)) ^ codes[offsets + k]) & np.uint64(0xFFFFFFFF)
    return values
