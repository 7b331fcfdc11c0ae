"""Tests for file utility functions."""

from __future__ import annotations

import hashlib
from pathlib import Path

import numpy as np

from vaultgraph.utils.files import anchor_hash, anchor_hashes, is_excluded, iter_markdown_paths, sha256_text


class TestIterMarkdownPaths:
    """Test iter_markdown_paths function."""

    def test_nested_and_sorted(self, tmp_path: Path) -> None:
        """Should find markdown files recursively in a stable order."""
        (tmp_path / "b.md").write_text("b")
        (tmp_path / "a.md").write_text("a")
        (tmp_path / "notes.txt").write_text("text")
        sub = tmp_path / "sub"
        sub.mkdir()
        (sub / "c.md").write_text("c")

        paths = [p.relative_to(tmp_path).as_posix() for p in iter_markdown_paths(tmp_path)]

        assert paths == ["a.md", "b.md", "sub/c.md"]

    def test_excluded_folders(self, tmp_path: Path) -> None:
        """Should skip excluded folders case-insensitively, but not prefixes of names."""
        for folder in ("Private", "Privateer"):
            (tmp_path / folder).mkdir()
            (tmp_path / folder / "x.md").write_text("x")

        paths = [
            p.relative_to(tmp_path).as_posix()
            for p in iter_markdown_paths(tmp_path, excluded_folders=["private"])
        ]

        assert paths == ["Privateer/x.md"]

    def test_empty_directory(self, tmp_path: Path) -> None:
        """Should yield nothing for an empty vault."""
        assert list(iter_markdown_paths(tmp_path)) == []


class TestIsExcluded:
    """Test is_excluded function."""

    def test_matches_folder_and_descendants(self) -> None:
        """Should match the folder itself and anything below it."""
        assert is_excluded("Archive/old.md", ["Archive"])
        assert is_excluded("archive/deep/old.md", ["Archive/"])
        assert not is_excluded("Archives/old.md", ["Archive"])
        assert not is_excluded("old.md", [])
        assert not is_excluded("old.md", [""])


class TestHashes:
    """Test hashing helpers."""

    def test_sha256_text(self) -> None:
        """Should hash the UTF-8 encoding."""
        assert sha256_text("café") == hashlib.sha256("café".encode("utf-8")).hexdigest()

    def test_anchor_hash_known_values(self) -> None:
        """Should follow DJB2 with xor, masked to 32 bits."""
        assert anchor_hash("") == 5381
        assert anchor_hash("a") == (5381 * 33) ^ ord("a")

    def test_anchor_hash_uses_prefix_only(self) -> None:
        """Should ignore characters past the first 4096."""
        base = "x" * 4096
        assert anchor_hash(base + "tail") == anchor_hash(base + "other")
        assert anchor_hash("abc") != anchor_hash("abd")

    def test_anchor_hashes_match_scalar_hash(self) -> None:
        """Should hash every window exactly like anchor_hash does."""
        text = "Cats eat meat. Dogs bark. Birds sing."
        offsets = np.arange(len(text) - 9)

        hashes = anchor_hashes(text, offsets, 9)

        assert [int(value) for value in hashes] == [anchor_hash(text[o : o + 9]) for o in offsets]

    def test_anchor_hashes_respect_prefix(self) -> None:
        """Should stop hashing after the first 4096 characters of each window."""
        text = "y" * 5000

        assert int(anchor_hashes(text, np.array([0]), 4500)[0]) == anchor_hash(text[:4500])
