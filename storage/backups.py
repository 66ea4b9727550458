from __future__ import annotations
import datetime as dt
import logging
import shutil
from pathlib import Path
from typing import List, Optional

from core.exceptions import BackupError
from storage.documents import DocumentStore

logger = logging.getLogger(__name__)

STAMP_FORMAT = "%Y%m%d_%H%M%S_%f"  # sorts chronologically as text


class BackupManager:
    """Timestamped copies of the collection files, taken before remote data overwrites them."""

    def __init__(self, store: DocumentStore, backup_dir=None, keep: int = 10):
        self.store = store
        self.backup_dir = Path(backup_dir) if backup_dir else store.data_dir / "backups"
        self.keep = keep
        self.last_backup: Optional[Path] = None

    def _new_backup_dir(self) -> Path:
        stamp = dt.datetime.now().strftime(STAMP_FORMAT)
        target = self.backup_dir / stamp
        n = 1
        while target.exists():
            target = self.backup_dir / f"{stamp}{n:02d}"
            n += 1
        return target

    def create_backup(self) -> Path:
        """Copy every persisted collection file. Raises BackupError; never returns a partial handle."""
        target = self._new_backup_dir()
        try:
            target.mkdir(parents=True)
            for path in self.store.files().values():
                if path.exists():
                    shutil.copy2(path, target / path.name)
        except OSError as e:
            shutil.rmtree(target, ignore_errors=True)
            raise BackupError(f"backup to {target} failed: {e}") from e
        self.last_backup = target
        logger.info("backup created at %s", target)
        self.prune_old_backups(self.keep)
        return target

    def restore(self, handle) -> bool:
        if not handle:
            return False
        source = Path(handle)
        if not source.is_dir():
            logger.warning("backup %s does not exist", source)
            return False
        try:
            for path in self.store.files().values():
                backed_up = source / path.name
                if backed_up.exists():
                    shutil.copy2(backed_up, path)
        except OSError as e:
            logger.error("restore from %s failed: %s", source, e)
            return False
        self.store.reload()
        logger.info("restored backup %s", source)
        return True

    def restore_last(self) -> bool:
        return self.restore(self.last_backup)

    def list_backups(self) -> List[Path]:
        """Newest first."""
        if not self.backup_dir.is_dir():
            return []
        return sorted((p for p in self.backup_dir.iterdir() if p.is_dir()),
                      key=lambda p: p.name, reverse=True)

    def prune_old_backups(self, keep: int) -> List[Path]:
        removed = []
        for old in self.list_backups()[max(keep, 0):]:
            try:
                shutil.rmtree(old)
                removed.append(old)
            except OSError as e:
                logger.warning("could not prune backup %s: %s", old, e)
        return removed
