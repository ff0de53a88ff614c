"""
Rotating database snapshots.

Snapshots are written with ``VACUUM INTO`` as ``scratchpad_<epoch>.db`` in a
backup directory (by default ``<data dir>/backups``).  A new snapshot is due
when the newest one is older than the configured interval; after each
snapshot only the newest ``max_backups`` are kept.  Pre-migration snapshots
(``scratchpad_premigration_<epoch>.db``) are written by the store and are
never rotated here.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

from scratchpad.config import default_data_dir
from scratchpad.store import BufferStore
from scratchpad.types import _now_epoch

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "scratchpad_"
_BACKUP_RE = re.compile(r"^scratchpad_(\d+)\.db$")


def default_backup_dir() -> Path:
    return default_data_dir() / "backups"


class BackupManager:
    """Daily snapshot policy over one BufferStore."""

    def __init__(
        self,
        store: BufferStore,
        backup_dir: Optional[str] = None,
        *,
        interval_hours: int = 24,
        max_backups: int = 7,
    ):
        self.store = store
        self.backup_dir = Path(backup_dir) if backup_dir else default_backup_dir()
        self.interval_seconds = interval_hours * 3600
        self.max_backups = max_backups

    def list_backups(self) -> List[Tuple[int, Path]]:
        """Rotating snapshots as (epoch, path), newest first."""
        if not self.backup_dir.is_dir():
            return []
        found = []
        for path in self.backup_dir.iterdir():
            m = _BACKUP_RE.match(path.name)
            if m and path.is_file():
                found.append((int(m.group(1)), path))
        found.sort(key=lambda item: item[0], reverse=True)
        return found

    def needs_backup(self, now: Optional[int] = None) -> bool:
        """True when no snapshot exists or the newest is older than the interval."""
        backups = self.list_backups()
        if not backups:
            return True
        now = _now_epoch() if now is None else now
        return now - backups[0][0] >= self.interval_seconds

    def create_backup(self, now: Optional[int] = None) -> Path:
        """Write a snapshot now, then rotate old ones."""
        epoch = _now_epoch() if now is None else now
        # Two snapshots within the same second: bump the stamp
        while (self.backup_dir / f"{BACKUP_PREFIX}{epoch}.db").exists():
            epoch += 1
        target = self.store.backup_to(self.backup_dir / f"{BACKUP_PREFIX}{epoch}.db")
        logger.info(f"Backup created: {target}")
        self.cleanup_old_backups()
        return target

    def cleanup_old_backups(self) -> int:
        """Delete all but the newest max_backups snapshots.  Returns count removed."""
        removed = 0
        for _, path in self.list_backups()[self.max_backups:]:
            try:
                path.unlink()
                removed += 1
            except OSError as exc:
                logger.warning(f"Failed to remove old backup {path}: {exc}")
        if removed:
            logger.info(f"Rotated {removed} old backup(s) in {self.backup_dir}")
        return removed

    def backup_if_due(self, now: Optional[int] = None) -> Optional[Path]:
        """Snapshot when due; None otherwise."""
        if not self.needs_backup(now):
            return None
        return self.create_backup(now)


def backup_manager_from_config(store: BufferStore, config) -> BackupManager:
    """BackupManager from a ScratchpadConfig (backup section, store.backup_dir)."""
    return BackupManager(
        store,
        config.store.backup_dir,
        interval_hours=config.backup.interval_hours,
        max_backups=config.backup.max_backups,
    )
