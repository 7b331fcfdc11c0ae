"""Helpers for parsing frontmatter and references between documents.

Everything here is pure string processing so it can run on either side of
the worker boundary.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import unquote

import yaml

from vaultgraph.models import FrontmatterProperty, ListProperty, TextProperty

LOGGER = logging.getLogger(__name__)

_CODE_RE = re.compile(r"(?<!`)(`+)(?!`)(.*?)(?<!`)\1(?!`)", re.DOTALL)
_ESCAPED_RE = re.compile(r"\\.")
_WIKILINK_RE = re.compile(r"\[\[([^\n]+?)\]\]")
_MDLINK_RE = re.compile(
    r"\[(?:[^\[\]\n]|\[[^\[\]\n]*\])*\]\(([^()\s]*(?:\([^()\s]*\)[^()\s]*)*)\)"
)
_HEADER_RE = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$", re.MULTILINE)
_EXTERNAL_RE = re.compile(r"^(?:[a-z][a-z0-9+.-]*:|//)", re.IGNORECASE)
_EXTENSION_RE = re.compile(r"\.[A-Za-z0-9]{1,5}$")


def normalize_path(path: str) -> str:
    """Canonical forward-slash form without leading ``./``, ``/`` or trailing ``/``."""
    if not path:
        return ""
    value = path.replace("\\", "/")
    value = re.sub(r"/+", "/", value)
    while value.startswith("./"):
        value = value[2:]
    return value.strip("/")


@dataclass(slots=True)
class FrontmatterSplit:
    frontmatter: str
    body: str
    body_offset: int


def split_frontmatter(text: str) -> FrontmatterSplit:
    """Separate a leading ``---`` YAML block from the document body."""
    if not text.startswith("---"):
        return FrontmatterSplit("", text, 0)

    first_line_end = text.find("\n")
    if first_line_end == -1 or text[:first_line_end].strip() != "---":
        return FrontmatterSplit("", text, 0)

    closing = text.find("\n---", first_line_end)
    if closing == -1:
        return FrontmatterSplit("", text, 0)

    body_start = closing + 4
    while body_start < len(text) and text[body_start] in "- \t\r":
        body_start += 1
    if body_start < len(text) and text[body_start] == "\n":
        body_start += 1

    return FrontmatterSplit(text[first_line_end + 1 : closing], text[body_start:], body_start)


def sanitize_reference(value: str) -> str:
    """Strip bracket, quote and alias decoration from a reference value."""
    cleaned = value.strip().strip("\"'").strip()
    markdown = _MDLINK_RE.fullmatch(cleaned)
    if markdown:
        cleaned = unquote(markdown.group(1))
    if cleaned.startswith("[[") and cleaned.endswith("]]"):
        cleaned = cleaned[2:-2]
    elif cleaned.startswith("[") and cleaned.endswith("]"):
        cleaned = cleaned[1:-1]
    cleaned = cleaned.split("|", 1)[0]
    return cleaned.strip().strip("\"'").strip()


def _flatten(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        items: List[str] = []
        for item in value:
            items.extend(_flatten(item))
        return items
    if isinstance(value, dict):
        return []
    return [str(value)]


def parse_frontmatter(raw: str) -> Dict[str, FrontmatterProperty]:
    """Parse a YAML block into typed properties keyed by lower-case name."""
    if not raw.strip():
        return {}
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        LOGGER.debug("Ignoring malformed frontmatter: %s", exc)
        return {}
    if not isinstance(data, dict):
        return {}

    properties: Dict[str, FrontmatterProperty] = {}
    for key, value in data.items():
        name = str(key).strip().lower()
        if isinstance(value, dict):
            continue
        if isinstance(value, (list, tuple, set)):
            items = tuple(
                cleaned for cleaned in (sanitize_reference(item) for item in _flatten(value)) if cleaned
            )
            properties[name] = ListProperty(items)
        elif value is not None:
            properties[name] = TextProperty(sanitize_reference(str(value)))
    return properties


def _mask(pattern: re.Pattern[str], text: str) -> str:
    return pattern.sub(lambda match: " " * len(match.group(0)), text)


def extract_links(text: str) -> List[str]:
    """Wikilinks and internal markdown links outside code, in order of appearance.

    Duplicates are preserved; callers deduplicate.
    """
    visible = _mask(_ESCAPED_RE, _mask(_CODE_RE, text))
    found: List[tuple[int, str]] = []

    for match in _WIKILINK_RE.finditer(visible):
        target = match.group(1).split("|", 1)[0].split("#", 1)[0].strip()
        if target:
            found.append((match.start(), target))

    for match in _MDLINK_RE.finditer(visible):
        if visible.startswith("[[", match.start()):
            continue
        raw = match.group(1).strip()
        if not raw or _EXTERNAL_RE.match(raw):
            continue
        target = raw.split("#", 1)[0].strip().lstrip("/")
        if target:
            found.append((match.start(), unquote(target)))

    found.sort(key=lambda item: item[0])
    return [target for _, target in found]


def extract_headers(text: str, *, max_level: int = 3) -> List[str]:
    """Heading titles up to ``max_level`` for structural outlines."""
    visible = _mask(_CODE_RE, text)
    return [
        match.group(2).strip()
        for match in _HEADER_RE.finditer(visible)
        if len(match.group(1)) <= max_level
    ]


def basename_key(path: str) -> str:
    """Lower-case basename without the markdown extension, used as alias key."""
    name = posixpath.basename(normalize_path(path))
    if name.lower().endswith(".md"):
        name = name[:-3]
    return name.lower()


def resolve_reference(
    link: str,
    aliases: Mapping[str, str],
    *,
    base_dir: str = "",
    exists: Optional[Callable[[str], bool]] = None,
) -> str:
    """Map a textual reference onto a canonical document path.

    Order: alias table (full reference, then basename), relative ``./``/``../``
    resolution against ``base_dir``, a sibling file in ``base_dir``, and finally
    the reference itself with a ``.md`` extension.
    """
    raw = sanitize_reference(link).replace("\\", "/")
    if not raw:
        return ""

    if raw.startswith("./") or raw.startswith("../"):
        joined = posixpath.normpath(posixpath.join(base_dir or ".", raw))
        return _with_extension(normalize_path(joined))

    normalized = normalize_path(raw)
    alias = aliases.get(normalized.lower()) or aliases.get(basename_key(normalized))
    if alias:
        return alias

    candidate = _with_extension(normalized)
    if base_dir and "/" not in normalized and exists is not None:
        sibling = f"{normalize_path(base_dir)}/{candidate}"
        if exists(sibling):
            return sibling
    return candidate


def _with_extension(path: str) -> str:
    if not _EXTENSION_RE.search(posixpath.basename(path)):
        return f"{path}.md"
    return path
