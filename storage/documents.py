from __future__ import annotations
import json
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from core.events import DATA_CHANGED, DATA_RELOADED, EventBus
from core.models import COLLECTION_NAMES, MODEL_BY_COLLECTION, Record, Snapshot, utcnow

logger = logging.getLogger(__name__)

# collection -> file name inside the data directory
COLLECTION_FILES: Dict[str, str] = {
    "tasks": "todos.json",
    "groups": "groups.json",
    "projects": "projects.json",
    "reviews": "reviews.json",
    "journalEntries": "diaries.json",
}


def _check_collection(name: str):
    if name not in COLLECTION_FILES:
        raise KeyError(f"unknown collection: {name}")


class DocumentStore:
    """Local JSON document store: one file per collection, whole-file writes."""

    def __init__(self, data_dir, bus: Optional[EventBus] = None):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.bus = bus
        self._cache: Dict[str, List[Record]] = {}
        self._lock = threading.RLock()

    # ---------- paths ----------
    def path_for(self, collection: str) -> Path:
        _check_collection(collection)
        return self.data_dir / COLLECTION_FILES[collection]

    def files(self) -> Dict[str, Path]:
        return {name: self.path_for(name) for name in COLLECTION_NAMES}

    # ---------- read ----------
    def _read(self, collection: str) -> List[Record]:
        path = self.path_for(collection)
        if not path.exists():
            return []
        model = MODEL_BY_COLLECTION[collection]
        try:
            with path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
            if not isinstance(raw, list):
                raise ValueError("expected a JSON array")
        except (OSError, ValueError) as e:
            # JSONDecodeError is a ValueError
            logger.warning("could not read %s, starting empty: %s", path, e)
            self._keep_unreadable(path)
            return []

        items: List[Record] = []
        skipped = 0
        for n, item in enumerate(raw):
            try:
                items.append(model.from_dict(item))
            except (ValueError, TypeError, KeyError) as e:
                logger.warning("%s: skipping entry %d: %s", path.name, n, e)
                skipped += 1
        if skipped:
            self._keep_unreadable(path)
        return items

    @staticmethod
    def _keep_unreadable(path: Path) -> Optional[Path]:
        """Copy a file that did not load cleanly aside, before a save replaces it."""
        target = path.with_name(f"{path.name}.{utcnow().strftime('%Y%m%d_%H%M%S_%f')}.unreadable")
        try:
            shutil.copy2(path, target)
        except OSError as e:
            logger.error("could not keep a copy of %s: %s", path, e)
            return None
        logger.warning("kept a copy of %s at %s", path.name, target)
        return target

    def load_all(self, collection: str) -> List[Record]:
        with self._lock:
            if collection not in self._cache:
                self._cache[collection] = self._read(collection)
            return list(self._cache[collection])

    def reload(self):
        """Drop the in-memory copies and re-read every collection from disk."""
        with self._lock:
            self._cache = {name: self._read(name) for name in COLLECTION_NAMES}
        if self.bus:
            self.bus.publish(DATA_RELOADED)

    # ---------- write ----------
    def _write(self, path: Path, items: List[Record]):
        payload = [item.to_dict() for item in items]
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w", dir=str(path.parent), prefix=".tmp_", suffix=".json",
                delete=False, encoding="utf-8",
            ) as tmp:
                json.dump(payload, tmp, indent=2, ensure_ascii=False)
                tmp_path = Path(tmp.name)
            os.replace(str(tmp_path), str(path))
            tmp_path = None
        finally:
            if tmp_path is not None and tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass

    def save_all(self, collection: str, items: List[Record], notify_remote: bool = True) -> bool:
        """Replace a collection on disk and in memory.

        `notify_remote=False` is for writes coming from the sync itself: they must
        not re-arm the upload debounce.
        """
        path = self.path_for(collection)
        items = list(items)
        with self._lock:
            try:
                self._write(path, items)
            except (OSError, TypeError, ValueError) as e:
                logger.error("save of %s failed, previous file kept: %s", path, e)
                return False
            self._cache[collection] = items
        if notify_remote and self.bus:
            self.bus.publish(DATA_CHANGED, collection)
        return True

    # ---------- snapshots ----------
    def snapshot(self, user_id: str = "") -> Snapshot:
        snap = Snapshot(user_id=user_id or "", updated_at=utcnow())
        for name in COLLECTION_NAMES:
            snap = snap.with_collection(name, self.load_all(name))
        return snap

    def apply_snapshot(self, snapshot: Snapshot, notify_remote: bool = False) -> bool:
        ok = True
        for name in COLLECTION_NAMES:
            ok = self.save_all(name, snapshot.collection(name), notify_remote=notify_remote) and ok
        return ok
