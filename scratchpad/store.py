"""
Buffer Store — SQLite Storage Engine

Tables:
    buffers            - one row per buffer (content + derived title/preview)
    buffers_fts        - external-content FTS5 index over buffers.content
    settings           - key/value peer table
    schema_migrations  - applied migration versions (ordered, gap-free)

Durability: WAL journal with synchronous=NORMAL.  A crash may lose the last
few milliseconds of writes; content is re-saved on every blur/switch.

Thread safety: one connection (check_same_thread=False) serialized by an
explicit lock.  Lock acquisition is bounded by the busy timeout so a stuck
writer surfaces as a retryable StorageError instead of a hang.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple

from scratchpad.errors import (
    CorruptionError,
    ScratchpadError,
    SchemaVersionError,
    StorageError,
)
from scratchpad.types import _now_epoch

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"

# ---------------------------------------------------------------------------
# FTS5 tokenizer validation
# ---------------------------------------------------------------------------

# Only alphanumeric, space, underscore, dot and hyphen; the tokenizer string
# is interpolated into DDL.
_FTS_TOKENIZER_PATTERN = re.compile(r"^[a-zA-Z0-9_ .\-]+$")


def _validate_fts_tokenizer(tokenizer: str) -> str:
    """Validate and return a safe FTS5 tokenizer string."""
    tokenizer = tokenizer.strip()
    if not tokenizer:
        raise ValueError("FTS5 tokenizer string cannot be empty")
    if not _FTS_TOKENIZER_PATTERN.match(tokenizer):
        raise ValueError(
            f"Unsafe FTS5 tokenizer string: {tokenizer!r} — "
            "only [a-zA-Z0-9_ .-] characters allowed"
        )
    return tokenizer


# ---------------------------------------------------------------------------
# Migrations (additive, applied in order, each in its own transaction)
# ---------------------------------------------------------------------------

_M001_CORE = """
CREATE TABLE IF NOT EXISTS buffers (
    seq          INTEGER PRIMARY KEY AUTOINCREMENT,  -- row identity, insertion order
    id           TEXT NOT NULL UNIQUE,
    content      TEXT NOT NULL DEFAULT '',
    title        TEXT NOT NULL DEFAULT 'Untitled',   -- derived from content
    preview      TEXT NOT NULL DEFAULT '',           -- derived from content
    created_at   INTEGER NOT NULL,
    updated_at   INTEGER NOT NULL,
    accessed_at  INTEGER NOT NULL,
    is_pinned    INTEGER NOT NULL DEFAULT 0,
    is_archived  INTEGER NOT NULL DEFAULT 0,
    sort_order   INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

INSERT OR IGNORE INTO settings (key, value) VALUES
    ('font_family', 'JetBrains Mono'),
    ('font_size', '13'),
    ('line_height', '1.5');
"""

# External-content mode: the index stores tokens only and reads content back
# from buffers by seq.  The triggers run inside the writing transaction, so
# the index never observes a state the primary table does not hold.
_M002_FTS = """
CREATE VIRTUAL TABLE IF NOT EXISTS buffers_fts USING fts5(
    content,
    content='buffers',
    content_rowid='seq',
    tokenize='{tokenizer}'
);

CREATE TRIGGER IF NOT EXISTS buffers_fts_ai
AFTER INSERT ON buffers BEGIN
    INSERT INTO buffers_fts(rowid, content) VALUES (new.seq, new.content);
END;

CREATE TRIGGER IF NOT EXISTS buffers_fts_ad
AFTER DELETE ON buffers BEGIN
    INSERT INTO buffers_fts(buffers_fts, rowid, content)
    VALUES ('delete', old.seq, old.content);
END;

-- Only content changes touch the index; pin/reorder/touch do not.
CREATE TRIGGER IF NOT EXISTS buffers_fts_au
AFTER UPDATE OF content ON buffers BEGIN
    INSERT INTO buffers_fts(buffers_fts, rowid, content)
    VALUES ('delete', old.seq, old.content);
    INSERT INTO buffers_fts(rowid, content) VALUES (new.seq, new.content);
END;

INSERT INTO buffers_fts(buffers_fts) VALUES ('rebuild');
"""

_M003_SIDEBAR_INDEX = """
CREATE INDEX IF NOT EXISTS idx_buffers_sidebar
ON buffers (is_archived, is_pinned DESC, sort_order, seq);
"""

MIGRATIONS: List[Tuple[int, str, str]] = [
    (1, "core_tables", _M001_CORE),
    (2, "buffers_fts", _M002_FTS),
    (3, "sidebar_index", _M003_SIDEBAR_INDEX),
]

SCHEMA_VERSION = MIGRATIONS[-1][0]

_CORRUPTION_MARKERS = ("not a database", "malformed", "corrupt")


def _is_blank(text: Optional[str]) -> int:
    """SQL is_blank(content): 1 when content is empty after str.strip()."""
    return int(text is None or not str(text).strip())


def _classify_open_error(exc: sqlite3.Error, db_path: str) -> ScratchpadError:
    """Map a sqlite3 failure during open to Corruption or Storage."""
    text = str(exc).lower()
    if any(marker in text for marker in _CORRUPTION_MARKERS):
        return CorruptionError(f"Database unreadable: {db_path}: {exc}", path=db_path)
    return StorageError(f"Cannot open database {db_path}: {exc}", retryable=False)


def quarantine_database(db_path: str) -> Optional[Path]:
    """Move an unreadable database (and its WAL/SHM files) out of the way.

    Returns the new path of the main file, or None if there was nothing to
    move.  The caller recreates a fresh store at the original path.
    """
    path = Path(db_path)
    if not path.exists():
        return None
    suffix = f".corrupt-{_now_epoch()}"
    target = path.with_name(path.name + suffix)
    path.rename(target)
    for side in ("-wal", "-shm"):
        p = path.with_name(path.name + side)
        if p.exists():
            p.rename(path.with_name(path.name + side + suffix))
    logger.warning(f"Quarantined unreadable database: {path} -> {target}")
    return target


# ---------------------------------------------------------------------------
# BufferStore
# ---------------------------------------------------------------------------

class BufferStore:
    """
    SQLite storage engine: schema, PRAGMAs, migrations, locking.

    The repository issues all buffer DML through :meth:`transaction` and
    :meth:`reading`; this class owns only DDL and maintenance.
    """

    def __init__(
        self,
        db_path: str = MEMORY_DB,
        *,
        wal_mode: bool = True,
        synchronous: str = "NORMAL",
        busy_timeout_ms: int = 5000,
        cache_size_kib: int = 64000,
        fts_tokenizer: Optional[str] = None,
        backup_dir: Optional[str] = None,
    ):
        """Open (creating if needed) the database and bring its schema current.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            synchronous: PRAGMA synchronous level (OFF/NORMAL/FULL/EXTRA).
            busy_timeout_ms: Upper bound on waiting for the database or the
                engine lock.
            cache_size_kib: Page cache size.
            fts_tokenizer: FTS5 tokenizer string, used when the index is
                first created.  Must match ``[a-zA-Z0-9_ .-]+``.
            backup_dir: If set, a snapshot is written here before migrations
                are applied to an existing database.

        Raises:
            CorruptionError: File is not a readable SQLite database.
            SchemaVersionError: File was migrated by a newer version.
            StorageError: Permission, disk or FTS5 availability problems.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        self._busy_timeout_ms = busy_timeout_ms
        self._fts_tokenizer = _validate_fts_tokenizer(
            fts_tokenizer or "unicode61 remove_diacritics 2"
        )
        self._backup_dir = Path(backup_dir) if backup_dir else None
        self._journal_mode = "memory"
        self._conn: Optional[sqlite3.Connection] = None
        level = str(synchronous).upper()
        if level not in ("OFF", "NORMAL", "FULL", "EXTRA"):
            raise ValueError(f"Invalid synchronous level: {synchronous!r}")

        if db_path != MEMORY_DB:
            try:
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageError(
                    f"Cannot create data directory for {db_path}: {exc}",
                    retryable=False,
                ) from exc
        try:
            # Autocommit mode: transactions are explicit (BEGIN IMMEDIATE).
            self._conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise _classify_open_error(exc, db_path) from exc
        self._conn.row_factory = sqlite3.Row
        self._conn.create_function("is_blank", 1, _is_blank, deterministic=True)

        try:
            self._configure(wal_mode, level, cache_size_kib)
            self._migrate()
        except ScratchpadError:
            self._close_quietly()
            raise
        except sqlite3.Error as exc:
            self._close_quietly()
            if "no such module" in str(exc).lower():
                raise StorageError(
                    f"SQLite build lacks FTS5: {exc}", retryable=False,
                ) from exc
            raise _classify_open_error(exc, db_path) from exc

        logger.info(
            f"BufferStore initialized: {db_path} "
            f"(journal={self._journal_mode}, schema=v{self.schema_version()})"
        )

    def _configure(self, wal_mode: bool, synchronous: str, cache_size_kib: int) -> None:
        """Apply connection PRAGMAs.  The first read also detects a non-database file."""
        conn = self._conn
        conn.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout_ms)}")
        # FTS triggers write to a virtual table
        conn.execute("PRAGMA trusted_schema = ON")
        conn.execute("PRAGMA foreign_keys = ON")
        # Only takes effect before the first table exists
        conn.execute("PRAGMA auto_vacuum = INCREMENTAL")
        conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
        if wal_mode and self._db_path != MEMORY_DB:
            row = conn.execute("PRAGMA journal_mode = WAL").fetchone()
            self._journal_mode = str(row[0]).lower()
        elif self._db_path != MEMORY_DB:
            self._journal_mode = str(
                conn.execute("PRAGMA journal_mode").fetchone()[0]
            ).lower()
        conn.execute(f"PRAGMA synchronous = {synchronous}")
        conn.execute(f"PRAGMA cache_size = -{int(cache_size_kib)}")
        conn.execute("PRAGMA temp_store = MEMORY")

    def _migrate(self) -> None:
        """Apply pending migrations in order; fail loudly on unknown history."""
        conn = self._conn
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations ("
            " version INTEGER PRIMARY KEY,"
            " name TEXT NOT NULL,"
            " applied_at INTEGER NOT NULL)"
        )
        applied = [
            row["version"] for row in conn.execute(
                "SELECT version FROM schema_migrations ORDER BY version"
            ).fetchall()
        ]
        known = [version for version, _, _ in MIGRATIONS]
        if applied and applied[-1] > known[-1]:
            raise SchemaVersionError(
                f"Database schema v{applied[-1]} is newer than supported "
                f"v{known[-1]}: {self._db_path}",
                path=self._db_path,
            )
        if applied != known[:len(applied)]:
            raise SchemaVersionError(
                f"Unexpected migration history {applied} (expected prefix of "
                f"{known}): {self._db_path}",
                path=self._db_path,
            )

        pending = MIGRATIONS[len(applied):]
        if not pending:
            return
        if applied and self._backup_dir is not None and self._db_path != MEMORY_DB:
            target = self._backup_dir / f"scratchpad_premigration_{_now_epoch()}.db"
            self._backup_dir.mkdir(parents=True, exist_ok=True)
            self._vacuum_into(target)
            logger.info(f"Pre-migration backup written: {target}")

        for version, name, sql in pending:
            script = sql.format(tokenizer=self._fts_tokenizer)
            try:
                conn.executescript(
                    "BEGIN IMMEDIATE;\n"
                    f"{script}\n"
                    "INSERT INTO schema_migrations (version, name, applied_at) "
                    f"VALUES ({version}, '{name}', {_now_epoch()});\n"
                    "COMMIT;"
                )
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            logger.info(f"Applied migration {version:03d}_{name}")

    # -- Locking and transactions ------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[sqlite3.Connection]:
        """Hold the engine lock, bounded by the busy timeout."""
        if self._conn is None:
            raise StorageError("Store is closed", retryable=False)
        if not self._lock.acquire(timeout=self._busy_timeout_ms / 1000.0):
            raise StorageError(
                f"Timed out after {self._busy_timeout_ms} ms waiting for the database lock"
            )
        try:
            if self._conn is None:
                raise StorageError("Store is closed", retryable=False)
            yield self._conn
        finally:
            self._lock.release()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one write transaction: all statements apply or none do.

        sqlite3 errors are rolled back and re-raised as StorageError; typed
        errors raised by the block (e.g. NotFoundError) roll back and pass
        through unchanged.
        """
        with self._locked() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot begin transaction: {exc}") from exc
            try:
                yield conn
            except sqlite3.Error as exc:
                self._rollback(conn)
                raise StorageError(f"Write failed: {exc}") from exc
            except BaseException:
                self._rollback(conn)
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback(conn)
                raise StorageError(f"Commit failed: {exc}") from exc

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Run read-only statements under the engine lock."""
        with self._locked() as conn:
            try:
                yield conn
            except sqlite3.Error as exc:
                raise StorageError(f"Read failed: {exc}") from exc

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as exc:
                logger.warning(f"Rollback failed: {exc}")

    # -- Introspection -----------------------------------------------------

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def journal_mode(self) -> str:
        return self._journal_mode

    @property
    def fts_tokenizer(self) -> str:
        return self._fts_tokenizer

    def schema_version(self) -> int:
        """Highest applied migration version (0 for an empty database)."""
        with self.reading() as conn:
            row = conn.execute(
                "SELECT MAX(version) AS v FROM schema_migrations"
            ).fetchone()
            return int(row["v"] or 0)

    def size_bytes(self) -> int:
        """Database size as page_count * page_size."""
        with self.reading() as conn:
            pages = conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            return int(pages) * int(page_size)

    # -- Maintenance -------------------------------------------------------

    def check_integrity(self) -> bool:
        """Run PRAGMA integrity_check; True when the database reports ok."""
        with self.reading() as conn:
            row = conn.execute("PRAGMA integrity_check").fetchone()
            ok = row is not None and row[0] == "ok"
        if not ok:
            logger.warning(f"Integrity check failed for {self._db_path}: {row[0] if row else None}")
        return ok

    def vacuum(self) -> None:
        """Reclaim free pages (incremental first, then a full VACUUM)."""
        with self.reading() as conn:
            conn.execute("PRAGMA incremental_vacuum").fetchall()
            conn.execute("VACUUM")
        logger.info(f"Vacuumed {self._db_path}")

    def rebuild_search_index(self) -> int:
        """Rebuild the FTS5 index from buffers.  Returns rows indexed."""
        with self.transaction() as conn:
            conn.execute("INSERT INTO buffers_fts(buffers_fts) VALUES ('rebuild')")
            count = conn.execute("SELECT COUNT(*) AS cnt FROM buffers").fetchone()["cnt"]
        logger.info(f"FTS5 index rebuilt: {count} buffers indexed")
        return count

    def backup_to(self, target: Path) -> Path:
        """Write a consistent snapshot of the database to *target* (VACUUM INTO)."""
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.exists():
            raise StorageError(f"Backup target already exists: {target}", retryable=False)
        with self._locked():
            try:
                self._vacuum_into(target)
            except sqlite3.Error as exc:
                raise StorageError(f"Backup failed: {exc}") from exc
        return target

    def _vacuum_into(self, target: Path) -> None:
        self._conn.execute("VACUUM INTO ?", (str(target),))

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._close_quietly()

    def _close_quietly(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error as exc:
                logger.warning(f"Error closing {self._db_path}: {exc}")
            self._conn = None

    def __enter__(self) -> BufferStore:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def open_store(config) -> BufferStore:
    """Open a BufferStore from a StoreConfig."""
    return BufferStore(
        config.db_path,
        wal_mode=config.wal_mode,
        synchronous=config.synchronous,
        busy_timeout_ms=config.busy_timeout_ms,
        cache_size_kib=config.cache_size_kib,
        fts_tokenizer=config.fts_tokenizer,
        backup_dir=config.backup_dir,
    )
