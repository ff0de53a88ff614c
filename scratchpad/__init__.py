"""
scratchpad — an infinite scratchpad of durable, searchable text buffers.

One file, one truth: every buffer lives in a single SQLite + FTS5 + WAL
database, kept in manual order and searchable by prefix.
"""

__version__ = "0.1.0"

from scratchpad.types import Buffer, BufferSummary, SearchResult, extract_title_preview
from scratchpad.errors import (
    ScratchpadError,
    NotFoundError,
    StorageError,
    ValidationError,
    CorruptionError,
    SchemaVersionError,
)
from scratchpad.store import BufferStore, SCHEMA_VERSION
from scratchpad.repository import BufferRepository
from scratchpad.config import ScratchpadConfig

__all__ = [
    "__version__",
    "Buffer",
    "BufferSummary",
    "SearchResult",
    "extract_title_preview",
    "ScratchpadError",
    "NotFoundError",
    "StorageError",
    "ValidationError",
    "CorruptionError",
    "SchemaVersionError",
    "BufferStore",
    "BufferRepository",
    "ScratchpadConfig",
    "SCHEMA_VERSION",
]
