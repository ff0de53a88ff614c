"""
Scratchpad Configuration

Configuration dataclasses for the storage engine, repository, search,
session controller and backups.  Includes load_config() for reading a JSON
config file with silent fallback to compiled defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from scratchpad.errors import ValidationError

APP_NAME = "scratchpad"
DB_FILENAME = "scratchpad.db"


def default_data_dir() -> Path:
    """Per-user application data directory ($XDG_DATA_HOME/scratchpad)."""
    base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / APP_NAME


def default_db_path() -> str:
    """Database path: $SCRATCHPAD_DB or <data dir>/scratchpad.db."""
    return os.environ.get("SCRATCHPAD_DB") or str(default_data_dir() / DB_FILENAME)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


_SYNCHRONOUS_LEVELS = ("OFF", "NORMAL", "FULL", "EXTRA")


@dataclass
class StoreConfig:
    """SQLite storage engine configuration."""
    db_path: str = field(default_factory=default_db_path)
    wal_mode: bool = True
    synchronous: str = "NORMAL"
    busy_timeout_ms: int = 5000
    cache_size_kib: int = 64000
    fts_tokenizer: str = "unicode61 remove_diacritics 2"
    backup_dir: Optional[str] = None

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if str(self.synchronous).upper() not in _SYNCHRONOUS_LEVELS:
            errors.append(
                f"store.synchronous: {self.synchronous!r} not in {_SYNCHRONOUS_LEVELS}"
            )
        _check_range(errors, "store.busy_timeout_ms",
                     self.busy_timeout_ms, 100, 60000, int)
        _check_range(errors, "store.cache_size_kib",
                     self.cache_size_kib, 0, 4_000_000, int)
        return errors


@dataclass
class RepositoryConfig:
    """Buffer repository limits."""
    page_size: int = 100
    max_content_bytes: int = 10 * 1024 * 1024

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "repository.page_size",
                     self.page_size, 1, 10000, int)
        _check_range(errors, "repository.max_content_bytes",
                     self.max_content_bytes, 1024, 1024 * 1024 * 1024, int)
        return errors


@dataclass
class SearchConfig:
    """Full-text query and snippet configuration."""
    limit: int = 20
    snippet_tokens: int = 16
    max_terms: int = 16
    highlight_open: str = "<mark>"
    highlight_close: str = "</mark>"
    ellipsis: str = "…"

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.limit", self.limit, 1, 1000, int)
        # FTS5 snippet() caps the token count at 64
        _check_range(errors, "search.snippet_tokens",
                     self.snippet_tokens, 1, 64, int)
        _check_range(errors, "search.max_terms", self.max_terms, 1, 64, int)
        return errors


@dataclass
class SessionConfig:
    """Session controller timing and retry policy."""
    debounce_ms: int = 500
    save_max_attempts: int = 3
    save_retry_delay_ms: int = 1000
    flush_timeout_ms: int = 2000
    welcome_on_first_run: bool = True
    cleanup_on_start: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "session.debounce_ms", self.debounce_ms, 0, 60000, int)
        _check_range(errors, "session.save_max_attempts",
                     self.save_max_attempts, 1, 10, int)
        _check_range(errors, "session.save_retry_delay_ms",
                     self.save_retry_delay_ms, 0, 60000, int)
        _check_range(errors, "session.flush_timeout_ms",
                     self.flush_timeout_ms, 10, 120000, int)
        return errors


@dataclass
class BackupConfig:
    """Rotating snapshot configuration."""
    enabled: bool = True
    interval_hours: int = 24
    max_backups: int = 7

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "backup.interval_hours",
                     self.interval_hours, 1, 24 * 365, int)
        _check_range(errors, "backup.max_backups", self.max_backups, 1, 1000, int)
        return errors


@dataclass
class ScratchpadConfig:
    """Top-level scratchpad configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ScratchpadConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "repository" in d:
            kwargs["repository"] = RepositoryConfig(**d["repository"])
        if "search" in d:
            kwargs["search"] = SearchConfig(**d["search"])
        if "session" in d:
            kwargs["session"] = SessionConfig(**d["session"])
        if "backup" in d:
            kwargs["backup"] = BackupConfig(**d["backup"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.repository.validate())
        errors.extend(self.search.validate())
        errors.extend(self.session.validate())
        errors.extend(self.backup.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> ScratchpadConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        ScratchpadConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = ScratchpadConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = ScratchpadConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = ScratchpadConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
