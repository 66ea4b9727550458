"""When to talk to the remote record.

Triggers:

- a local change (`notify_changed`) arms a debounce countdown; every further
  change restarts it. When it runs out the local snapshot is uploaded as is.
- login / start-up runs the full cycle: backup, fetch, merge, repair, persist
  locally, upload the merged snapshot.
- a long interval heartbeat uploads without merging.
- a manual download backs up, then replaces local data with the remote snapshot.
- shutdown cancels the timers and makes one last bounded upload.

At most one network operation runs at a time. A heartbeat or manual call that
finds one in flight is skipped; an expiring debounce countdown is re-armed
instead so the change is uploaded once the current operation ends. Failures
become status messages and never reach the caller.
"""
from __future__ import annotations
import logging
import threading
from enum import Enum
from typing import Callable, List, Optional

from core.config import SyncSettings
from core.events import AUTH_CHANGED, DATA_CHANGED, SYNC_STATUS, EventBus
from core.exceptions import AuthError, SyncError
from core.models import utcnow
from services.merge import MergeResult, merge_snapshots
from services.repair import repair_snapshot
from storage.auth import AuthSession
from storage.backups import BackupManager
from storage.documents import DocumentStore
from storage.remote import RemoteRecordClient

logger = logging.getLogger(__name__)

# status phases published on SYNC_STATUS
BACKING_UP = "backing up"
SYNCING = "syncing"
SYNCED = "synced"
UPLOADING = "uploading"
UPLOADED = "uploaded"
SYNC_FAILED = "sync failed"
UPLOAD_FAILED = "upload failed"
DOWNLOADING = "downloading"
DOWNLOADED = "downloaded"
NO_REMOTE_DATA = "no remote data"
DOWNLOAD_FAILED = "download failed"


class SchedulerState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    SYNCING = "syncing"


class SyncScheduler:
    def __init__(self, store: DocumentStore, remote: RemoteRecordClient, backups: BackupManager,
                 auth: AuthSession, bus: Optional[EventBus] = None,
                 settings: Optional[SyncSettings] = None,
                 timer_factory: Callable[..., threading.Timer] = threading.Timer):
        self.store = store
        self.remote = remote
        self.backups = backups
        self.auth = auth
        self.bus = bus
        self.settings = settings or SyncSettings()
        self._timer_factory = timer_factory

        self._lock = threading.Lock()
        self._syncing = False
        self._idle = threading.Event()
        self._idle.set()
        self._generation = 0  # bumped on every re-arm/cancel; stale timers compare and bail out
        self._debounce_timer: Optional[threading.Timer] = None
        self._interval_timer: Optional[threading.Timer] = None
        self._heartbeat = False
        self._suspended = False  # set by an auth failure until the next start()

        self.last_sync_time = None
        self.last_result: Optional[MergeResult] = None
        self._unsubscribe: List[Callable[[], None]] = []
        if bus is not None:
            self._unsubscribe.append(bus.subscribe(DATA_CHANGED, lambda _: self.notify_changed()))
            self._unsubscribe.append(bus.subscribe(AUTH_CHANGED, self._on_auth_changed))

    # ---------- state ----------
    @property
    def state(self) -> SchedulerState:
        with self._lock:
            if self._syncing:
                return SchedulerState.SYNCING
            if self._debounce_timer is not None:
                return SchedulerState.DEBOUNCING
            return SchedulerState.IDLE

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def suspended(self) -> bool:
        return self._suspended

    def _authorized(self) -> bool:
        return self.auth.is_authenticated() and not self._suspended

    def _status(self, phase: str):
        logger.debug("sync status: %s", phase)
        if self.bus is not None:
            self.bus.publish(SYNC_STATUS, phase)

    # ---------- debounce ----------
    def notify_changed(self):
        if not self._authorized():
            return
        with self._lock:
            self._arm_debounce()

    def _drop_debounce(self):
        # caller holds self._lock
        self._generation += 1
        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
            self._debounce_timer = None

    def _arm_debounce(self):
        # caller holds self._lock
        self._drop_debounce()
        timer = self._timer_factory(self.settings.debounce_delay, self._on_debounce_elapsed,
                                    args=(self._generation,))
        timer.daemon = True
        self._debounce_timer = timer
        timer.start()

    def _on_debounce_elapsed(self, generation: int):
        with self._lock:
            if generation != self._generation:
                return
            self._debounce_timer = None
            if not self._authorized():
                return
            if self._syncing:
                self._arm_debounce()
                return
            self._claim()
        self._run_claimed(self._upload_only, "debounced upload", UPLOAD_FAILED)

    # ---------- heartbeat ----------
    def _schedule_heartbeat(self):
        # caller holds self._lock
        if self._interval_timer is not None:
            self._interval_timer.cancel()
            self._interval_timer = None
        if not self._heartbeat:
            return
        timer = self._timer_factory(self.settings.auto_sync_interval, self._on_heartbeat)
        timer.daemon = True
        self._interval_timer = timer
        timer.start()

    def _on_heartbeat(self):
        with self._lock:
            if not self._heartbeat:
                return
            self._interval_timer = None
        if self._authorized():
            self._run_exclusive(self._upload_only, "heartbeat upload", UPLOAD_FAILED)
        with self._lock:
            self._schedule_heartbeat()

    # ---------- exclusive runs ----------
    def _claim(self):
        # caller holds self._lock
        self._syncing = True
        self._idle.clear()

    def _run_exclusive(self, op, what: str, failed_status: str):
        with self._lock:
            if self._syncing:
                logger.debug("%s skipped, a sync is already running", what)
                return None
            self._claim()
        return self._run_claimed(op, what, failed_status)

    def _run_claimed(self, op, what: str, failed_status: str):
        try:
            return op()
        except AuthError as e:
            logger.warning("%s rejected, automatic sync paused until next login: %s", what, e)
            self._suspend()
            self._status(failed_status)
        except (SyncError, OSError) as e:
            logger.error("%s failed: %s", what, e)
            self._status(failed_status)
        except Exception:
            logger.exception("%s failed", what)
            self._status(failed_status)
        finally:
            with self._lock:
                self._syncing = False
                self._idle.set()
        return None

    def _suspend(self):
        self._suspended = True
        self.cancel()

    # ---------- operations ----------
    def _user_id(self) -> str:
        user_id = self.auth.current_user_id()
        if not user_id:
            raise AuthError("Not signed in")
        return user_id

    def _upload_only(self, attempts: Optional[int] = None, timeout: Optional[float] = None) -> bool:
        user_id = self._user_id()
        self._status(UPLOADING)
        self.remote.upsert(user_id, self.store.snapshot(user_id), attempts=attempts, timeout=timeout)
        self.last_sync_time = utcnow()
        self._status(UPLOADED)
        return True

    def _full_sync(self) -> MergeResult:
        user_id = self._user_id()
        self._status(BACKING_UP)
        self.backups.create_backup()

        self._status(SYNCING)
        remote = self.remote.fetch(user_id)
        result = merge_snapshots(self.store.snapshot(user_id), remote)
        result.merged, report = repair_snapshot(result.merged)
        if report.changed:
            logger.info("repair pass: %d groups created, %d parents refreshed",
                        len(report.created_groups), len(report.refreshed_parents))

        if not self.store.apply_snapshot(result.merged, notify_remote=False):
            raise SyncError("merged data could not be written locally")
        self.remote.upsert(user_id, result.merged)

        self.last_sync_time = utcnow()
        self.last_result = result
        logger.info("sync done: %s", result.summary())
        self._status(SYNCED)
        return result

    def _download_only(self) -> bool:
        user_id = self._user_id()
        self._status(BACKING_UP)
        backup = self.backups.create_backup()

        self._status(DOWNLOADING)
        remote = self.remote.fetch(user_id)
        if remote is None:
            self._status(NO_REMOTE_DATA)
            return False
        # drop the pending upload of the data being replaced
        with self._lock:
            self._drop_debounce()
        if not self.store.apply_snapshot(remote, notify_remote=False):
            raise SyncError(f"downloaded data could not be written locally, backup kept at {backup}")
        self.last_sync_time = utcnow()
        self._status(DOWNLOADED)
        return True

    def sync_now(self) -> Optional[MergeResult]:
        """Full merge cycle, run on the calling thread. None when skipped or failed."""
        if not self._authorized():
            return None
        return self._run_exclusive(self._full_sync, "sync", SYNC_FAILED)

    def upload_now(self) -> bool:
        if not self._authorized():
            return False
        return bool(self._run_exclusive(self._upload_only, "upload", UPLOAD_FAILED))

    def download_now(self) -> bool:
        """Backup, then replace local data with the remote snapshot. Skipped while a sync runs.

        False when skipped, when the remote has no record, or on failure; after a
        failed local write the backup is at `backups.last_backup`.
        """
        if not self._authorized():
            return False
        return bool(self._run_exclusive(self._download_only, "download", DOWNLOAD_FAILED))

    # ---------- lifecycle ----------
    def start(self) -> Optional[threading.Thread]:
        """After login or at start-up with a restored session: merge in the background, start the heartbeat."""
        self._suspended = False
        if not self.auth.is_authenticated():
            return None
        with self._lock:
            self._heartbeat = True
            self._schedule_heartbeat()
        thread = threading.Thread(target=self.sync_now, name="startup-sync", daemon=True)
        thread.start()
        return thread

    def cancel(self):
        """Back to idle: drop the pending countdown and stop the heartbeat."""
        with self._lock:
            self._drop_debounce()
            self._heartbeat = False
            if self._interval_timer is not None:
                self._interval_timer.cancel()
                self._interval_timer = None

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Stop everything, then one last single-attempt upload.

        `timeout` bounds both the wait for a running operation and the final
        request, so teardown takes at most twice `timeout`.
        """
        if timeout is None:
            timeout = self.settings.shutdown_timeout
        self.cancel()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        if not self._authorized():
            return False
        if not self._idle.wait(timeout):
            logger.warning("sync still running after %.1fs, skipping final upload", timeout)
            return False
        request_timeout = min(timeout, self.settings.request_timeout)
        return bool(self._run_exclusive(lambda: self._upload_only(attempts=1, timeout=request_timeout),
                                        "final upload", UPLOAD_FAILED))

    def _on_auth_changed(self, user_id):
        if user_id is None:
            self.cancel()
