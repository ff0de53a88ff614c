"""
Buffer Repository — CRUD, ordering and search façade.

This is the only module that issues DML against the buffers, settings and
FTS tables.  Every operation runs inside one BufferStore transaction (or a
locked read) and returns typed values; failures surface as ScratchpadError
subclasses, never as raw sqlite3 exceptions.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Tuple

from scratchpad.errors import NotFoundError, ValidationError
from scratchpad.ordering import (
    DISPLAY_ORDER_SQL,
    DOWN,
    UP,
    assign_pinned_sort_orders,
    assign_sort_orders,
    next_sort_order,
    plan_move,
    plan_reorder,
    resolve_next_active,
)
from scratchpad.query import compile_query
from scratchpad.store import BufferStore
from scratchpad.types import (
    Buffer,
    BufferSummary,
    SearchResult,
    _generate_id,
    _now_epoch,
    extract_title_preview,
)

logger = logging.getLogger(__name__)

_SUMMARY_COLUMNS = "id, title, preview, created_at, updated_at, is_pinned, sort_order, seq"


def _row_to_summary(row: sqlite3.Row) -> BufferSummary:
    return BufferSummary(
        id=row["id"],
        title=row["title"],
        preview=row["preview"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        is_pinned=bool(row["is_pinned"]),
        sort_order=row["sort_order"],
        seq=row["seq"],
    )


def _row_to_buffer(row: sqlite3.Row) -> Buffer:
    return Buffer(
        id=row["id"],
        content=row["content"],
        title=row["title"],
        preview=row["preview"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        accessed_at=row["accessed_at"],
        is_pinned=bool(row["is_pinned"]),
        is_archived=bool(row["is_archived"]),
        sort_order=row["sort_order"],
    )


def _require_id(buffer_id: Any) -> str:
    if not isinstance(buffer_id, str) or not buffer_id:
        raise ValidationError(f"Invalid buffer id: {buffer_id!r}")
    return buffer_id


class BufferRepository:
    """Buffer operations over a BufferStore."""

    def __init__(
        self,
        store: BufferStore,
        *,
        page_size: int = 100,
        max_content_bytes: int = 10 * 1024 * 1024,
        search_limit: int = 20,
        snippet_tokens: int = 16,
        max_terms: int = 16,
        highlight_open: str = "<mark>",
        highlight_close: str = "</mark>",
        ellipsis: str = "…",
    ):
        self.store = store
        self.page_size = page_size
        self.max_content_bytes = max_content_bytes
        self.search_limit = search_limit
        self.snippet_tokens = snippet_tokens
        self.max_terms = max_terms
        self.highlight_open = highlight_open
        self.highlight_close = highlight_close
        self.ellipsis = ellipsis

    @classmethod
    def from_config(cls, store: BufferStore, config) -> BufferRepository:
        """Build from a ScratchpadConfig (repository + search sections)."""
        return cls(
            store,
            page_size=config.repository.page_size,
            max_content_bytes=config.repository.max_content_bytes,
            search_limit=config.search.limit,
            snippet_tokens=config.search.snippet_tokens,
            max_terms=config.search.max_terms,
            highlight_open=config.search.highlight_open,
            highlight_close=config.search.highlight_close,
            ellipsis=config.search.ellipsis,
        )

    # -- Helpers -----------------------------------------------------------

    def _check_content(self, content: Any) -> str:
        if not isinstance(content, str):
            raise ValidationError(
                f"Buffer content must be text, got {type(content).__name__}"
            )
        size = len(content.encode("utf-8", errors="surrogatepass"))
        if size > self.max_content_bytes:
            raise ValidationError(
                f"Buffer content is {size} bytes (max {self.max_content_bytes})"
            )
        return content

    @staticmethod
    def _min_sort_order(conn: sqlite3.Connection) -> Optional[int]:
        row = conn.execute(
            "SELECT MIN(sort_order) AS m FROM buffers WHERE is_archived = 0"
        ).fetchone()
        return row["m"]

    @staticmethod
    def _unpinned_ids(conn: sqlite3.Connection) -> List[str]:
        rows = conn.execute(
            "SELECT id FROM buffers WHERE is_archived = 0 AND is_pinned = 0 "
            "ORDER BY sort_order ASC, seq DESC"
        ).fetchall()
        return [row["id"] for row in rows]

    @staticmethod
    def _pinned_ids(conn: sqlite3.Connection) -> List[str]:
        rows = conn.execute(
            "SELECT id FROM buffers WHERE is_archived = 0 AND is_pinned = 1 "
            "ORDER BY seq ASC"
        ).fetchall()
        return [row["id"] for row in rows]

    @classmethod
    def _renumber(cls, conn: sqlite3.Connection, unpinned_ids: List[str]) -> None:
        """Write 0..n-1 to the unpinned order and -k..-1 to the pinned group."""
        conn.executemany(
            "UPDATE buffers SET sort_order = ? WHERE id = ?",
            assign_pinned_sort_orders(cls._pinned_ids(conn))
            + assign_sort_orders(unpinned_ids),
        )

    @staticmethod
    def _display_ids(conn: sqlite3.Connection) -> List[str]:
        rows = conn.execute(
            f"SELECT id FROM buffers WHERE is_archived = 0 ORDER BY {DISPLAY_ORDER_SQL}"
        ).fetchall()
        return [row["id"] for row in rows]

    # -- Write operations --------------------------------------------------

    def create(self, initial_content: str = "") -> BufferSummary:
        """Insert a new buffer first among unpinned buffers and return its summary."""
        content = self._check_content(initial_content or "")
        title, preview = extract_title_preview(content)
        buffer_id = _generate_id()
        now = _now_epoch()
        with self.store.transaction() as conn:
            sort_order = next_sort_order(self._min_sort_order(conn))
            cur = conn.execute(
                """INSERT INTO buffers
                   (id, content, title, preview, created_at, updated_at,
                    accessed_at, is_pinned, is_archived, sort_order)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, ?)""",
                (buffer_id, content, title, preview, now, now, now, sort_order),
            )
        logger.debug(f"Created buffer {buffer_id} (sort_order={sort_order})")
        return BufferSummary(
            id=buffer_id,
            title=title,
            preview=preview,
            created_at=now,
            updated_at=now,
            is_pinned=False,
            sort_order=sort_order,
            seq=cur.lastrowid,
        )

    def save(self, buffer_id: str, content: str) -> Tuple[str, str]:
        """Replace a buffer's content.  Returns the recomputed (title, preview).

        Raises:
            NotFoundError: The buffer was deleted (or archived) meanwhile.
            ValidationError: Content is not text or exceeds the size limit.
        """
        _require_id(buffer_id)
        content = self._check_content(content)
        title, preview = extract_title_preview(content)
        with self.store.transaction() as conn:
            cur = conn.execute(
                """UPDATE buffers
                   SET content = ?, title = ?, preview = ?,
                       updated_at = MAX(updated_at, ?)
                   WHERE id = ? AND is_archived = 0""",
                (content, title, preview, _now_epoch(), buffer_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(buffer_id)
        return title, preview

    def delete(self, buffer_id: str) -> Optional[str]:
        """Delete a buffer (and its index entry).  Returns the id to activate next."""
        _require_id(buffer_id)
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT is_archived FROM buffers WHERE id = ?", (buffer_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(buffer_id)
            next_id = resolve_next_active(self._display_ids(conn), buffer_id)
            conn.execute("DELETE FROM buffers WHERE id = ?", (buffer_id,))
        logger.debug(f"Deleted buffer {buffer_id} (next active: {next_id})")
        return next_id

    def toggle_pin(self, buffer_id: str) -> bool:
        """Flip the pin state.  Returns the new state.

        Unpinning places the buffer first among unpinned buffers.
        """
        _require_id(buffer_id)
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT is_pinned FROM buffers WHERE id = ? AND is_archived = 0",
                (buffer_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(buffer_id)
            pinned = not bool(row["is_pinned"])
            if pinned:
                conn.execute(
                    "UPDATE buffers SET is_pinned = 1 WHERE id = ?", (buffer_id,)
                )
            else:
                conn.execute(
                    "UPDATE buffers SET is_pinned = 0, sort_order = ? WHERE id = ?",
                    (next_sort_order(self._min_sort_order(conn)), buffer_id),
                )
        logger.debug(f"Buffer {buffer_id} pinned={pinned}")
        return pinned

    def reorder(self, ordered_ids: Iterable[str]) -> List[str]:
        """Apply a client ordering of unpinned buffers atomically.

        Stale, pinned and duplicate ids are discarded; live unpinned ids the
        client omitted keep their relative order after the requested ones.
        Every unpinned buffer receives sort_order equal to its new index.
        Pinned buffers are renumbered -k..-1 in the same transaction.

        Returns:
            The unpinned order that was written.
        """
        requested = list(ordered_ids)
        for buffer_id in requested:
            if not isinstance(buffer_id, str):
                raise ValidationError(f"Invalid buffer id in reorder: {buffer_id!r}")
        with self.store.transaction() as conn:
            target, discarded = plan_reorder(self._unpinned_ids(conn), requested)
            self._renumber(conn, target)
        if discarded:
            logger.debug(f"Reorder discarded {len(discarded)} id(s): {discarded}")
        logger.debug(f"Reordered {len(target)} buffers")
        return target

    def _move(self, buffer_id: str, direction: str) -> bool:
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT is_pinned, is_archived FROM buffers WHERE id = ?",
                (buffer_id,),
            ).fetchone()
            if row is None or row["is_pinned"] or row["is_archived"]:
                return False
            target = plan_move(self._unpinned_ids(conn), buffer_id, direction)
            if target is None:
                return False
            self._renumber(conn, target)
        logger.debug(f"Moved buffer {buffer_id} {direction}")
        return True

    def move_up(self, buffer_id: str) -> bool:
        """Swap with the unpinned buffer above.  False when not movable."""
        return self._move(buffer_id, UP)

    def move_down(self, buffer_id: str) -> bool:
        """Swap with the unpinned buffer below.  False when not movable."""
        return self._move(buffer_id, DOWN)

    def cleanup_empty(self, active_id: Optional[str] = None) -> int:
        """Delete unpinned, non-active buffers whose content is blank.

        Archived buffers are left alone.  Returns the number removed.
        """
        with self.store.transaction() as conn:
            cur = conn.execute(
                """DELETE FROM buffers
                    WHERE is_pinned = 0 AND is_archived = 0
                      AND (? IS NULL OR id != ?)
                      AND is_blank(content)""",
                (active_id, active_id),
            )
            removed = cur.rowcount
        if removed:
            logger.debug(f"Cleanup removed {removed} empty buffer(s)")
        return removed

    def archive(self, buffer_id: str) -> None:
        """Hide a buffer from listings and search without deleting it."""
        _require_id(buffer_id)
        with self.store.transaction() as conn:
            cur = conn.execute(
                "UPDATE buffers SET is_archived = 1 WHERE id = ?", (buffer_id,)
            )
            if cur.rowcount == 0:
                raise NotFoundError(buffer_id)
        logger.debug(f"Archived buffer {buffer_id}")

    def restore(self, buffer_id: str) -> None:
        """Bring an archived buffer back, first among unpinned buffers."""
        _require_id(buffer_id)
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT is_archived FROM buffers WHERE id = ?", (buffer_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(buffer_id)
            if row["is_archived"]:
                conn.execute(
                    "UPDATE buffers SET is_archived = 0, sort_order = ? WHERE id = ?",
                    (next_sort_order(self._min_sort_order(conn)), buffer_id),
                )
        logger.debug(f"Restored buffer {buffer_id}")

    def set_setting(self, key: str, value: str) -> None:
        """Insert or replace one settings entry."""
        if not isinstance(key, str) or not key.strip():
            raise ValidationError(f"Invalid setting key: {key!r}")
        with self.store.transaction() as conn:
            conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )

    # -- Read operations ---------------------------------------------------

    def get_content(self, buffer_id: str, *, touch: bool = True) -> str:
        """Return a live buffer's content, recording the access unless touch=False."""
        _require_id(buffer_id)
        with self.store.transaction() as conn:
            row = conn.execute(
                "SELECT content FROM buffers WHERE id = ? AND is_archived = 0",
                (buffer_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(buffer_id)
            if touch:
                conn.execute(
                    "UPDATE buffers SET accessed_at = MAX(accessed_at, ?) WHERE id = ?",
                    (_now_epoch(), buffer_id),
                )
            return row["content"]

    def get(self, buffer_id: str) -> Buffer:
        """Full buffer row, archived or not."""
        _require_id(buffer_id)
        with self.store.reading() as conn:
            row = conn.execute(
                "SELECT * FROM buffers WHERE id = ?", (buffer_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(buffer_id)
        return _row_to_buffer(row)

    def list_page(self, offset: int = 0, limit: Optional[int] = None) -> List[BufferSummary]:
        """One page of live buffers in display order (pinned first)."""
        limit = self.page_size if limit is None else limit
        if offset < 0 or limit < 1:
            raise ValidationError(f"Invalid page: offset={offset}, limit={limit}")
        with self.store.reading() as conn:
            rows = conn.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM buffers WHERE is_archived = 0 "
                f"ORDER BY {DISPLAY_ORDER_SQL} LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_row_to_summary(row) for row in rows]

    def list_archived(self) -> List[BufferSummary]:
        """Archived buffers, most recently updated first."""
        with self.store.reading() as conn:
            rows = conn.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM buffers WHERE is_archived = 1 "
                "ORDER BY updated_at DESC, seq DESC"
            ).fetchall()
        return [_row_to_summary(row) for row in rows]

    def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """Ranked full-text search over live buffers.

        An empty (or whitespace-only) query returns no results.  Snippets
        are produced by FTS5 so content is never loaded into the result.

        Raises:
            ValidationError: Query contains characters outside letters,
                digits and hyphens, or too many terms.
        """
        expr = compile_query(query, max_terms=self.max_terms)
        if not expr:
            return []
        limit = self.search_limit if limit is None else limit
        with self.store.reading() as conn:
            rows = conn.execute(
                """SELECT b.id AS id, b.updated_at AS updated_at,
                          snippet(buffers_fts, 0, ?, ?, ?, ?) AS snippet,
                          bm25(buffers_fts) AS score
                   FROM buffers_fts
                   JOIN buffers b ON b.seq = buffers_fts.rowid
                   WHERE buffers_fts MATCH ? AND b.is_archived = 0
                   ORDER BY score ASC, b.updated_at DESC
                   LIMIT ?""",
                (
                    self.highlight_open, self.highlight_close,
                    self.ellipsis, self.snippet_tokens,
                    expr, limit,
                ),
            ).fetchall()
        # bm25() is lower-is-better; expose higher-is-better
        return [
            SearchResult(
                id=row["id"],
                snippet=row["snippet"],
                updated_at=row["updated_at"],
                score=-float(row["score"]),
            )
            for row in rows
        ]

    def count(self, include_archived: bool = False) -> int:
        """Number of buffers (live only unless include_archived)."""
        sql = "SELECT COUNT(*) AS cnt FROM buffers"
        if not include_archived:
            sql += " WHERE is_archived = 0"
        with self.store.reading() as conn:
            return conn.execute(sql).fetchone()["cnt"]

    def get_settings(self) -> Dict[str, str]:
        """All settings as a dict."""
        with self.store.reading() as conn:
            rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def stats(self) -> Dict[str, Any]:
        """Counts and storage facts for the stats command."""
        with self.store.reading() as conn:
            row = conn.execute(
                """SELECT
                     SUM(CASE WHEN is_archived = 0 THEN 1 ELSE 0 END) AS live,
                     SUM(CASE WHEN is_archived = 0 AND is_pinned = 1 THEN 1 ELSE 0 END) AS pinned,
                     SUM(CASE WHEN is_archived = 1 THEN 1 ELSE 0 END) AS archived
                   FROM buffers"""
            ).fetchone()
        return {
            "buffers": row["live"] or 0,
            "pinned": row["pinned"] or 0,
            "archived": row["archived"] or 0,
            "schema_version": self.store.schema_version(),
            "journal_mode": self.store.journal_mode,
            "db_path": self.store.db_path,
            "db_size_bytes": self.store.size_bytes(),
        }
