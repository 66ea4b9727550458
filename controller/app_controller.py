from __future__ import annotations
import datetime as dt
import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional

from core.config import SyncSettings
from core.events import SYNC_STATUS, EventBus
from core.exceptions import AuthError
from core.models import (
    Group, JournalEntry, Priority, Project, ReviewNote, ReviewPeriod, Task, utcnow,
)
from services.repair import refresh_subtask_progress
from services.scheduler import SyncScheduler
from storage.auth import AuthSession
from storage.backups import BackupManager
from storage.documents import DocumentStore
from storage.remote import RemoteRecordClient

logger = logging.getLogger(__name__)


class AppController:
    """What the UI talks to: session, sync actions and the local edits that feed them.

    Every collaborator is passed in; `build_controller` does the wiring once at start-up.
    """
    def __init__(self, bus: EventBus, store: DocumentStore, backups: BackupManager,
                 auth: AuthSession, remote: RemoteRecordClient, scheduler: SyncScheduler,
                 session_path: Optional[Path] = None):
        self.bus = bus
        self.store = store
        self.backups = backups
        self.auth = auth
        self.remote = remote
        self.scheduler = scheduler
        self.session_path = session_path

    # ---- UI integration ----
    def on_status(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Subscribe to sync status text ("syncing", "synced", "sync failed", ...)."""
        return self.bus.subscribe(SYNC_STATUS, callback)

    # ---- session ----
    def login(self, email: str, password: str) -> bool:
        try:
            self.auth.login(email, password)
        except AuthError as e:
            logger.warning("login failed: %s", e)
            return False
        if self.session_path:
            self.auth.save(self.session_path)
        self.scheduler.start()
        return True

    def resume_session(self) -> bool:
        """App start: pick up a saved session and sync if there is one."""
        if not self.session_path or not self.auth.restore(self.session_path):
            return False
        self.scheduler.start()
        return True

    def logout(self):
        self.scheduler.cancel()
        self.auth.logout()
        if self.session_path:
            AuthSession.forget(self.session_path)

    def shutdown(self) -> bool:
        return self.scheduler.shutdown()

    # ---- sync ----
    def sync_now(self):
        return self.scheduler.sync_now()

    def upload_now(self) -> bool:
        return self.scheduler.upload_now()

    def download_only(self) -> bool:
        """Overwrite local data with the remote snapshot, after a backup.

        On False after a partial write, `restore_last_backup()` brings the old data back.
        """
        return self.scheduler.download_now()

    # ---- backups ----
    def list_backups(self) -> List[Path]:
        return self.backups.list_backups()

    def restore_backup(self, handle) -> bool:
        return self.backups.restore(handle)

    def restore_last_backup(self) -> bool:
        return self.backups.restore_last()

    # ---- tasks ----
    def _tasks(self) -> List[Task]:
        return self.store.load_all("tasks")

    def _save_tasks(self, tasks: List[Task]):
        tasks, _ = refresh_subtask_progress(tasks)
        self.store.save_all("tasks", tasks)

    def add_task(self, title: str, priority: Priority = Priority.LOW,
                 due_date: Optional[dt.datetime] = None, group_id: Optional[str] = None) -> Task:
        task = Task(title=title, priority=priority, due_date=due_date, group_id=group_id)
        self._save_tasks(self._tasks() + [task])
        return task

    def add_subtask(self, parent_id: str, title: str) -> Optional[Task]:
        tasks = self._tasks()
        parent = next((t for t in tasks if t.id == parent_id), None)
        if parent is None:
            return None
        # inherits priority and group, listed right after the parent
        sub = Task(title=title, parent_id=parent_id, priority=parent.priority, group_id=parent.group_id)
        tasks.insert(tasks.index(parent) + 1, sub)
        self._save_tasks(tasks)
        return sub

    def toggle_done(self, task_id: str) -> Optional[Task]:
        tasks = self._tasks()
        for i, task in enumerate(tasks):
            if task.id == task_id:
                now = utcnow()
                done = not task.is_completed
                tasks[i] = replace(task, is_completed=done, completed_at=now if done else None,
                                   updated_at=now)
                self._save_tasks(tasks)
                return tasks[i]
        return None

    def postpone_to_today(self, task_id: str) -> Optional[Task]:
        """Move an open, dated task to today; the first original due date is kept."""
        tasks = self._tasks()
        for i, task in enumerate(tasks):
            if task.id == task_id and task.due_date and not task.is_completed:
                now = utcnow()
                today = now.replace(hour=0, minute=0, second=0, microsecond=0)
                tasks[i] = replace(task, original_due_date=task.original_due_date or task.due_date,
                                   due_date=today, due_time=None, updated_at=now)
                self._save_tasks(tasks)
                return tasks[i]
        return None

    def delete_task(self, task_id: str) -> bool:
        # sub-tasks go with their parent; deletions are not synced
        tasks = self._tasks()
        kept = [t for t in tasks if t.id != task_id and t.parent_id != task_id]
        if len(kept) == len(tasks):
            return False
        self._save_tasks(kept)
        return True

    # ---- projects ----
    def add_project(self, name: str, icon: str = "📁", color: str = "#8B5CF6",
                    description: Optional[str] = None) -> Project:
        """A project always comes with its own task group."""
        group = Group(name=name, icon=icon, color=color)
        project = Project(name=name, icon=icon, color=color, description=description,
                          linked_group_id=group.id)
        self.store.save_all("groups", self.store.load_all("groups") + [group])
        self.store.save_all("projects", [project] + self.store.load_all("projects"))
        return project

    # ---- journal / reviews ----
    def add_journal_entry(self, content: str, mood: Optional[str] = None) -> JournalEntry:
        entry = JournalEntry(content=content, mood=mood)
        self.store.save_all("journalEntries", [entry] + self.store.load_all("journalEntries"))
        return entry

    def save_review(self, period: ReviewPeriod, date: dt.datetime, content: str,
                    title: str = "", reflection: Optional[str] = None,
                    next_plan: Optional[str] = None) -> ReviewNote:
        """One review per period and day: an existing one is updated in place."""
        reviews = self.store.load_all("reviews")
        now = utcnow()
        for i, review in enumerate(reviews):
            if review.period == period and review.date and review.date.date() == date.date():
                reviews[i] = replace(review, title=title, content=content, reflection=reflection,
                                     next_plan=next_plan, updated_at=now)
                self.store.save_all("reviews", reviews)
                return reviews[i]
        review = ReviewNote(period=period, date=date, title=title, content=content,
                            reflection=reflection, next_plan=next_plan)
        self.store.save_all("reviews", reviews + [review])
        return review


def build_controller(data_dir, settings: Optional[SyncSettings] = None) -> AppController:
    """Construct every collaborator once and wire them together."""
    settings = settings or SyncSettings()
    data_dir = Path(data_dir)
    bus = EventBus()
    store = DocumentStore(data_dir, bus=bus)
    backups = BackupManager(store, keep=settings.backup_keep)
    auth = AuthSession(settings.base_url, settings.api_key, bus=bus, timeout=settings.request_timeout)
    remote = RemoteRecordClient(settings.base_url, auth, api_key=settings.api_key,
                                timeout=settings.request_timeout, attempts=settings.retry_attempts,
                                backoff=settings.retry_backoff)
    scheduler = SyncScheduler(store, remote, backups, auth, bus=bus, settings=settings)
    return AppController(bus, store, backups, auth, remote, scheduler,
                         session_path=data_dir / "session.json")
