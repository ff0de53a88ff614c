"""
Buffer Data Model

A buffer is the durable unit of content. Title and preview are derived from
the content (first and second non-blank lines) and are recomputed on every
write; they are never accepted as user input.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, asdict
from typing import Any, Dict, Tuple

UNTITLED = "Untitled"
TITLE_MAX_CHARS = 100


def _now_epoch() -> int:
    """Current time in whole seconds since the epoch."""
    return int(time.time())


def _generate_id() -> str:
    """Opaque unique buffer identifier."""
    return str(uuid.uuid4())


def extract_title_preview(content: str) -> Tuple[str, str]:
    """Derive (title, preview) from buffer content.

    Title is the first non-blank line, preview the next non-blank line after
    it. Both are stripped and truncated to 100 code points. A buffer with no
    non-blank line is titled "Untitled" with an empty preview.

    Examples:
        >>> extract_title_preview("# Groceries\\n\\n- milk\\n- eggs")
        ('# Groceries', '- milk')
        >>> extract_title_preview("   \\n")
        ('Untitled', '')
    """
    title = None
    preview = ""
    for raw in content.split("\n"):
        line = raw.strip()
        if not line:
            continue
        if title is None:
            title = line[:TITLE_MAX_CHARS]
            continue
        preview = line[:TITLE_MAX_CHARS]
        break
    return (title if title is not None else UNTITLED), preview


@dataclass
class Buffer:
    """Full buffer row, as stored."""

    id: str
    content: str = ""
    title: str = UNTITLED
    preview: str = ""
    created_at: int = 0
    updated_at: int = 0
    accessed_at: int = 0
    is_pinned: bool = False
    is_archived: bool = False
    sort_order: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BufferSummary:
    """Sidebar entry: everything needed to render a buffer without its content."""

    id: str
    title: str = UNTITLED
    preview: str = ""
    created_at: int = 0
    updated_at: int = 0
    is_pinned: bool = False
    sort_order: int = 0
    seq: int = 0  # insertion sequence; orders the pinned group

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> BufferSummary:
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class SearchResult:
    """One ranked full-text match with a bounded, highlighted snippet."""

    id: str
    snippet: str
    updated_at: int
    score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
