"""
scratchpad MCP Tools — the buffer command surface as MCP tools.

Thin wrappers around BufferRepository.  Tools never raise: every result is
``{"status": "ok", ...}`` or ``{"status": "error", "error": {kind, message}}``
where ``kind`` is one of not_found, storage, validation, corruption.

Tools:
    create_buffer, save_buffer, get_buffer_content, get_sidebar_data,
    search_buffers, delete_buffer, toggle_pin, reorder_buffers,
    cleanup_empty_buffers, archive_buffer, get_buffer_count
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from scratchpad.errors import ScratchpadError
from scratchpad.repository import BufferRepository

logger = logging.getLogger(__name__)


def _error(action: str, exc: Exception) -> Dict[str, Any]:
    """Error envelope; unexpected exceptions are logged and reported as kind 'error'."""
    if isinstance(exc, ScratchpadError):
        return {"status": "error", "error": exc.to_dict()}
    logger.exception(f"{action} failed")
    return {
        "status": "error",
        "error": {"kind": "error", "message": f"{action} failed: {exc}"},
    }


def register_buffer_tools(mcp, repository: BufferRepository) -> None:
    """
    Register the buffer MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        repository: BufferRepository over an open BufferStore.
    """

    @mcp.tool()
    def create_buffer(content: str = "") -> Dict[str, Any]:
        """Create a buffer, placed first among unpinned buffers.

        Args:
            content: Optional initial text.

        Returns:
            buffer: Summary (id, title, preview, timestamps, pin state).
        """
        try:
            summary = repository.create(content)
            return {"status": "ok", "buffer": summary.to_dict()}
        except Exception as e:
            return _error("Create", e)

    @mcp.tool()
    def save_buffer(buffer_id: str, content: str) -> Dict[str, Any]:
        """Replace a buffer's content; title and preview are recomputed.

        Returns:
            title, preview: Derived from the first two non-blank lines.
        """
        try:
            title, preview = repository.save(buffer_id, content)
            return {"status": "ok", "title": title, "preview": preview}
        except Exception as e:
            return _error("Save", e)

    @mcp.tool()
    def get_buffer_content(buffer_id: str) -> Dict[str, Any]:
        """Full text of one buffer."""
        try:
            return {"status": "ok", "content": repository.get_content(buffer_id)}
        except Exception as e:
            return _error("Read", e)

    @mcp.tool()
    def get_sidebar_data(offset: int = 0, limit: Optional[int] = None) -> Dict[str, Any]:
        """One page of buffer summaries, pinned first, then manual order.

        Returns:
            buffers: Summaries for this page.
            has_more: True when a full page was returned.
        """
        try:
            page = repository.list_page(offset, limit)
            size = repository.page_size if limit is None else limit
            return {
                "status": "ok",
                "buffers": [s.to_dict() for s in page],
                "has_more": len(page) == size,
            }
        except Exception as e:
            return _error("List", e)

    @mcp.tool()
    def search_buffers(query: str, limit: Optional[int] = None) -> Dict[str, Any]:
        """Ranked prefix search over buffer text.

        Terms may contain only letters, digits and hyphens; all terms must
        match.  Snippets wrap matches in <mark>…</mark>.
        """
        try:
            results = repository.search(query, limit=limit)
            return {"status": "ok", "results": [r.to_dict() for r in results]}
        except Exception as e:
            return _error("Search", e)

    @mcp.tool()
    def delete_buffer(buffer_id: str) -> Dict[str, Any]:
        """Delete a buffer.  Returns the id that should become active next (or null)."""
        try:
            return {"status": "ok", "next_active_id": repository.delete(buffer_id)}
        except Exception as e:
            return _error("Delete", e)

    @mcp.tool()
    def toggle_pin(buffer_id: str) -> Dict[str, Any]:
        """Pin or unpin a buffer.  Returns the new state."""
        try:
            return {"status": "ok", "is_pinned": repository.toggle_pin(buffer_id)}
        except Exception as e:
            return _error("Pin", e)

    @mcp.tool()
    def reorder_buffers(buffer_ids: List[str]) -> Dict[str, Any]:
        """Set the order of unpinned buffers.  Unknown or pinned ids are ignored."""
        try:
            repository.reorder(buffer_ids)
            return {"status": "ok"}
        except Exception as e:
            return _error("Reorder", e)

    @mcp.tool()
    def cleanup_empty_buffers(active_id: Optional[str] = None) -> Dict[str, Any]:
        """Delete blank, unpinned buffers other than active_id."""
        try:
            return {"status": "ok", "removed": repository.cleanup_empty(active_id)}
        except Exception as e:
            return _error("Cleanup", e)

    @mcp.tool()
    def archive_buffer(buffer_id: str) -> Dict[str, Any]:
        """Hide a buffer from listings and search without deleting it."""
        try:
            repository.archive(buffer_id)
            return {"status": "ok"}
        except Exception as e:
            return _error("Archive", e)

    @mcp.tool()
    def get_buffer_count(include_archived: bool = False) -> Dict[str, Any]:
        """Number of buffers."""
        try:
            return {"status": "ok", "count": repository.count(include_archived)}
        except Exception as e:
            return _error("Count", e)
