"""
Error Taxonomy

Every failure the engine reports to its callers is one of four kinds:

    not_found   - a buffer id that no longer exists (caller refreshes its view)
    storage     - I/O, lock timeout or constraint violation (retryable writes)
    validation  - malformed query, oversized content, bad config
    corruption  - database unreadable at open time (backup-and-recreate)

Raw ``sqlite3`` exceptions never cross the repository boundary.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ScratchpadError(Exception):
    """Base class for all typed scratchpad failures."""

    kind = "error"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the command surface (MCP tools, CLI --json)."""
        return {"kind": self.kind, "message": str(self)}


class NotFoundError(ScratchpadError):
    """Operation referenced a buffer id that does not exist (or is archived)."""

    kind = "not_found"

    def __init__(self, buffer_id: str, message: Optional[str] = None):
        self.buffer_id = buffer_id
        super().__init__(message or f"Buffer not found: {buffer_id}")

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["buffer_id"] = self.buffer_id
        return d


class StorageError(ScratchpadError):
    """I/O, lock-timeout, or constraint failure inside the storage engine."""

    kind = "storage"

    def __init__(self, message: str, *, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["retryable"] = self.retryable
        return d


class ValidationError(ScratchpadError, ValueError):
    """Input rejected before it reached storage."""

    kind = "validation"


class CorruptionError(ScratchpadError):
    """Database file or schema unreadable; not recoverable in-process."""

    kind = "corruption"

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class SchemaVersionError(CorruptionError):
    """Applied migrations do not match what this version of the code knows."""
