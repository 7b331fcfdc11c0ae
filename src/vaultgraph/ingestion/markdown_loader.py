"""Markdown parsing and chunking utilities."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from vaultgraph.models import Chunk, FrontmatterProperty
from vaultgraph.utils.files import anchor_hash
from vaultgraph.utils.links import (
    basename_key,
    extract_headers,
    extract_links,
    normalize_path,
    parse_frontmatter,
    split_frontmatter,
)
from vaultgraph.utils.text import segment_document

LOGGER = logging.getLogger(__name__)

_TAG_RE = re.compile(r"(?<![\w#/&])#([^\W\d][\w/-]*)", re.UNICODE)
_CODE_BLOCK_RE = re.compile(r"```.*?```|`[^`\n]*`", re.DOTALL)


@dataclass(slots=True)
class ParsedDocument:
    """A markdown document split into its typed parts."""

    path: str
    title: str
    content: str
    body: str
    body_offset: int
    properties: Dict[str, FrontmatterProperty] = field(default_factory=dict)
    headers: List[str] = field(default_factory=list)
    aliases: List[str] = field(default_factory=list)
    body_links: List[str] = field(default_factory=list)
    frontmatter_links: List[str] = field(default_factory=list)
    semantic_refs: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    def property_values(self, name: str) -> List[str]:
        prop = self.properties.get(name.lower())
        return prop.values() if prop is not None else []


def default_title(path: str) -> str:
    name = normalize_path(path).rsplit("/", 1)[-1]
    return name[:-3] if name.lower().endswith(".md") else name


def _unique(values: Sequence[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)


def parse_document(
    path: str,
    content: str,
    *,
    title: str | None = None,
    semantic_properties: Sequence[str] = ("topics", "tags"),
    extra_links: Sequence[str] = (),
) -> ParsedDocument:
    """Parse frontmatter, references, tags and headers out of markdown ``content``."""
    split = split_frontmatter(content)
    properties = parse_frontmatter(split.frontmatter)
    parsed = ParsedDocument(
        path=normalize_path(path),
        title=title or default_title(path),
        content=content,
        body=split.body,
        body_offset=split.body_offset,
        properties=properties,
        headers=extract_headers(split.body),
    )

    aliases = parsed.property_values("aliases") + parsed.property_values("alias")
    parsed.aliases = _unique(aliases)
    parsed.body_links = _unique(list(extract_links(split.body)) + list(extra_links))
    parsed.frontmatter_links = _unique(extract_links(split.frontmatter))

    semantic: List[str] = []
    tags: List[str] = []
    for name in semantic_properties:
        values = parsed.property_values(name)
        if name.lower() == "tags":
            tags.extend(value.lstrip("#") for value in values)
        else:
            semantic.extend(values)
    visible_body = _CODE_BLOCK_RE.sub(" ", split.body)
    tags.extend(match.group(1) for match in _TAG_RE.finditer(visible_body))

    parsed.semantic_refs = _unique(semantic)
    parsed.tags = _unique([tag.strip().lower() for tag in tags if tag.strip()])
    return parsed


def build_context_header(parsed: ParsedDocument, properties: Sequence[str]) -> str:
    """Semantic context prepended to each chunk before embedding."""
    lines: List[str] = []
    for name in properties:
        key = name.lower()
        if key == "title":
            values = [parsed.title] if parsed.title else []
        else:
            values = parsed.property_values(key)
        if values:
            lines.append(f"{name.capitalize()}: {', '.join(values)}")
    return "\n".join(lines)


def has_indexable_properties(parsed: ParsedDocument, properties: Sequence[str]) -> bool:
    return any(
        parsed.property_values(name)
        for name in properties
        if name.lower() != "title"
    )


def build_chunks(
    parsed: ParsedDocument,
    *,
    max_chars: int = 1000,
    overlap: int = 100,
    header_properties: Sequence[str] = ("title", "topics", "author", "status"),
) -> List[Chunk]:
    """Produce chunk records for a parsed document."""
    header = build_context_header(parsed, header_properties)
    created = time.time()
    links = parsed.body_links

    spans = segment_document(
        parsed.content, max_chars=max_chars, overlap=overlap, start=parsed.body_offset
    )
    if not spans:
        if parsed.body_offset and has_indexable_properties(parsed, header_properties):
            text = parsed.content[: parsed.body_offset]
            LOGGER.debug("Indexing frontmatter-only document %s", parsed.path)
            return [
                Chunk(
                    document_path=parsed.path,
                    index=0,
                    text=text,
                    start=0,
                    end=parsed.body_offset,
                    context_header=header,
                    anchor=anchor_hash(text),
                    created_at=created,
                    links=list(links),
                )
            ]
        return []

    return [
        Chunk(
            document_path=parsed.path,
            index=index,
            text=span.text,
            start=span.start,
            end=span.end,
            context_header=header,
            anchor=anchor_hash(span.text),
            created_at=created,
            links=list(links),
        )
        for index, span in enumerate(spans)
    ]


def alias_keys(parsed: ParsedDocument) -> List[str]:
    """Lower-case keys under which this document can be referenced."""
    keys = [basename_key(parsed.path)] + [alias.lower() for alias in parsed.aliases]
    return _unique(keys)


def tag_node_id(tag: str) -> str:
    return f"tag:{tag.lower()}"

