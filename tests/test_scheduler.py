import threading
import time
from unittest.mock import patch

import pytest

from core.events import SYNC_STATUS
from core.exceptions import AuthError, BackupError, TransientRemoteError
from core.models import Project, Snapshot, Task
from services import scheduler as sched_mod
from services.scheduler import SchedulerState, SyncScheduler

from conftest import at


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeTimer:
    """Stands in for threading.Timer; fires only when the test says so."""
    created = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args)


@pytest.fixture
def timers():
    FakeTimer.created = []
    return FakeTimer.created


@pytest.fixture
def manual(store, remote, backups, auth, bus, settings, timers):
    sched = SyncScheduler(store, remote, backups, auth, bus=bus, settings=settings,
                          timer_factory=FakeTimer)
    yield sched
    sched.cancel()


@pytest.fixture
def statuses(bus):
    seen = []
    bus.subscribe(SYNC_STATUS, seen.append)
    return seen


@pytest.fixture
def gate(remote):
    """Make remote.upsert block until the returned event is set."""
    release = threading.Event()
    entered = threading.Event()

    def blocking_upsert(*args, **kwargs):
        entered.set()
        release.wait(5)

    remote.upsert.side_effect = blocking_upsert
    yield release, entered
    release.set()


class TestDebounce:
    def test_burst_of_changes_uploads_once(self, scheduler, remote):
        for _ in range(5):
            scheduler.notify_changed()
        assert scheduler.state is SchedulerState.DEBOUNCING

        assert wait_for(lambda: remote.upsert.call_count == 1)
        time.sleep(0.15)
        assert remote.upsert.call_count == 1
        user_id, snapshot = remote.upsert.call_args.args
        assert user_id == "user-1"
        assert isinstance(snapshot, Snapshot)
        assert wait_for(lambda: scheduler.state is SchedulerState.IDLE)

    def test_each_change_restarts_the_countdown(self, manual, remote, timers, settings):
        manual.notify_changed()
        manual.notify_changed()
        first, second = timers
        assert first.cancelled and not second.cancelled
        assert second.interval == settings.debounce_delay
        assert second.daemon

        first.fire()  # stale, ignored
        remote.upsert.assert_not_called()
        second.fire()
        remote.upsert.assert_called_once()
        assert manual.state is SchedulerState.IDLE

    def test_local_save_arms_countdown(self, scheduler, store, remote):
        store.save_all("tasks", [Task(id="t1", title="from the ui")])
        assert wait_for(lambda: remote.upsert.call_count == 1)
        snapshot = remote.upsert.call_args.args[1]
        assert [t.id for t in snapshot.tasks] == ["t1"]

    def test_quiet_writes_do_not_arm(self, manual, store, timers):
        store.save_all("tasks", [Task(id="t1")], notify_remote=False)
        assert timers == []
        assert manual.state is SchedulerState.IDLE

    def test_cancel_drops_pending_upload(self, scheduler, remote):
        scheduler.notify_changed()
        scheduler.cancel()
        assert scheduler.state is SchedulerState.IDLE
        time.sleep(0.15)
        remote.upsert.assert_not_called()

    def test_countdown_expiring_mid_sync_rearms(self, manual, remote, timers, gate):
        release, entered = gate
        worker = threading.Thread(target=manual.upload_now)
        worker.start()
        assert entered.wait(2)

        manual.notify_changed()
        timers[-1].fire()
        assert len(timers) == 2 and timers[-1].started
        assert remote.upsert.call_count == 1

        release.set()
        worker.join(2)
        timers[-1].fire()
        assert remote.upsert.call_count == 2


class TestExclusive:
    def test_no_second_operation_while_one_runs(self, scheduler, remote, gate):
        release, entered = gate
        worker = threading.Thread(target=scheduler.upload_now)
        worker.start()
        assert entered.wait(2)
        assert scheduler.is_syncing
        assert scheduler.state is SchedulerState.SYNCING

        assert scheduler.upload_now() is False
        assert scheduler.sync_now() is None
        remote.fetch.assert_not_called()

        release.set()
        worker.join(2)
        assert remote.upsert.call_count == 1
        assert not scheduler.is_syncing


class TestNotSignedIn:
    def test_everything_is_a_no_op(self, manual, auth, remote, timers):
        auth.logout()
        manual.notify_changed()
        assert timers == []
        assert manual.sync_now() is None
        assert manual.upload_now() is False
        assert manual.start() is None
        assert manual.shutdown() is False
        remote.fetch.assert_not_called()
        remote.upsert.assert_not_called()

    def test_logout_cancels_pending_countdown(self, manual, auth, timers):
        manual.notify_changed()
        auth.logout()
        assert timers[0].cancelled
        assert manual.state is SchedulerState.IDLE


class TestFullSync:
    def test_backup_merge_persist_upload(self, scheduler, store, remote, backups, statuses):
        store.save_all("tasks", [Task(id="A", title="local", updated_at=at(1))], notify_remote=False)
        remote.fetch.return_value = Snapshot(
            user_id="user-1",
            tasks=[Task(id="C", title="remote", updated_at=at(3))],
            projects=[Project(id="p", name="Orphan")],
        )

        result = scheduler.sync_now()

        assert result is not None
        assert (result.local_only, result.remote_only, result.merged_count) == (1, 2, 0)
        assert sorted(t.id for t in store.load_all("tasks")) == ["A", "C"]
        project = store.load_all("projects")[0]
        assert project.linked_group_id in {g.id for g in store.load_all("groups")}

        remote.fetch.assert_called_once_with("user-1")
        user_id, uploaded = remote.upsert.call_args.args
        assert user_id == "user-1"
        assert uploaded is result.merged
        assert len(backups.list_backups()) == 1
        assert statuses == [sched_mod.BACKING_UP, sched_mod.SYNCING, sched_mod.SYNCED]
        assert scheduler.last_result is result
        assert scheduler.last_sync_time is not None

    def test_merge_writes_do_not_trigger_upload(self, manual, timers):
        manual.sync_now()
        assert timers == []

    def test_backup_failure_aborts(self, scheduler, backups, remote, statuses):
        with patch.object(backups, "create_backup", side_effect=BackupError("disk full")):
            assert scheduler.sync_now() is None
        remote.fetch.assert_not_called()
        remote.upsert.assert_not_called()
        assert statuses[-1] == sched_mod.SYNC_FAILED
        assert not scheduler.is_syncing

    def test_local_write_failure_skips_upload(self, scheduler, store, remote, statuses):
        with patch.object(store, "apply_snapshot", return_value=False):
            assert scheduler.sync_now() is None
        remote.upsert.assert_not_called()
        assert statuses[-1] == sched_mod.SYNC_FAILED


class TestFailures:
    def test_transient_failure_becomes_status(self, scheduler, remote, statuses):
        remote.upsert.side_effect = TransientRemoteError("timeout")
        assert scheduler.upload_now() is False
        assert statuses == [sched_mod.UPLOADING, sched_mod.UPLOAD_FAILED]
        assert not scheduler.is_syncing
        assert not scheduler.suspended

    def test_unexpected_error_is_contained(self, scheduler, remote, statuses):
        remote.upsert.side_effect = RuntimeError("bug")
        assert scheduler.upload_now() is False
        assert statuses[-1] == sched_mod.UPLOAD_FAILED
        assert not scheduler.is_syncing

    def test_auth_rejection_suspends_until_start(self, manual, remote, timers, statuses):
        remote.upsert.side_effect = AuthError("JWT expired", 401)
        assert manual.upload_now() is False
        assert manual.suspended
        assert statuses[-1] == sched_mod.UPLOAD_FAILED

        manual.notify_changed()
        assert timers == []

        remote.upsert.side_effect = None
        thread = manual.start()
        thread.join(2)
        assert not manual.suspended
        assert remote.upsert.call_count == 2


class TestLifecycle:
    def test_start_syncs_and_schedules_heartbeat(self, manual, remote, timers, settings):
        thread = manual.start()
        assert isinstance(thread, threading.Thread)
        thread.join(2)
        remote.fetch.assert_called_once_with("user-1")
        assert remote.upsert.call_count == 1

        heartbeat = timers[0]
        assert heartbeat.interval == settings.auto_sync_interval
        heartbeat.fire()
        assert remote.upsert.call_count == 2
        # upload only, no second fetch
        remote.fetch.assert_called_once()
        assert timers[-1] is not heartbeat and timers[-1].started

    def test_cancel_stops_heartbeat(self, manual, remote, timers):
        manual.start().join(2)
        manual.cancel()
        assert timers[0].cancelled
        timers[0].fire()
        assert remote.upsert.call_count == 1

    def test_shutdown_makes_one_bounded_upload(self, manual, remote, store, timers, settings):
        assert manual.shutdown() is True
        remote.upsert.assert_called_once()
        assert remote.upsert.call_args.kwargs["attempts"] == 1
        assert remote.upsert.call_args.kwargs["timeout"] == settings.shutdown_timeout

        store.save_all("tasks", [Task(id="late")])
        assert timers == []

    def test_shutdown_gives_up_waiting_for_running_sync(self, scheduler, remote, gate):
        release, entered = gate
        worker = threading.Thread(target=scheduler.upload_now)
        worker.start()
        assert entered.wait(2)

        assert scheduler.shutdown(timeout=0.05) is False
        release.set()
        worker.join(2)
        assert remote.upsert.call_count == 1


class TestDownload:
    def test_replaces_local_data(self, manual, store, remote, backups, statuses):
        store.save_all("tasks", [Task(id="mine")], notify_remote=False)
        remote.fetch.return_value = Snapshot(user_id="user-1", tasks=[Task(id="theirs")])

        assert manual.download_now() is True
        assert [t.id for t in store.load_all("tasks")] == ["theirs"]
        assert len(backups.list_backups()) == 1
        assert statuses == [sched_mod.BACKING_UP, sched_mod.DOWNLOADING, sched_mod.DOWNLOADED]
        remote.upsert.assert_not_called()

    def test_skipped_while_a_sync_runs(self, scheduler, remote):
        release = threading.Event()
        entered = threading.Event()
        fetches = []

        def blocking_fetch(user_id):
            fetches.append(user_id)
            entered.set()
            release.wait(5)
            return None

        remote.fetch.side_effect = blocking_fetch
        worker = threading.Thread(target=scheduler.sync_now)
        worker.start()
        try:
            assert entered.wait(2)
            assert scheduler.download_now() is False
            assert fetches == ["user-1"]
        finally:
            release.set()
            worker.join(2)
        assert len(fetches) == 1

    def test_drops_pending_upload_of_replaced_data(self, manual, remote, timers):
        remote.fetch.return_value = Snapshot(user_id="user-1", tasks=[Task(id="theirs")])
        manual.notify_changed()
        assert manual.state is SchedulerState.DEBOUNCING

        assert manual.download_now()
        assert timers[0].cancelled
        timers[0].fire()
        remote.upsert.assert_not_called()
        assert manual.state is SchedulerState.IDLE

    def test_write_failure_keeps_backup_and_reports(self, manual, store, remote, backups, statuses):
        store.save_all("tasks", [Task(id="mine")], notify_remote=False)
        remote.fetch.return_value = Snapshot(user_id="user-1", tasks=[Task(id="theirs")])

        with patch.object(store, "apply_snapshot", return_value=False):
            assert manual.download_now() is False
        assert statuses[-1] == sched_mod.DOWNLOAD_FAILED
        assert backups.last_backup is not None
        assert not manual.is_syncing

    def test_rejected_credential_suspends(self, manual, remote, statuses):
        remote.fetch.side_effect = AuthError("JWT expired", 401)
        assert manual.download_now() is False
        assert manual.suspended
        assert statuses[-1] == sched_mod.DOWNLOAD_FAILED

    def test_no_remote_record(self, manual, store, statuses):
        store.save_all("tasks", [Task(id="mine")], notify_remote=False)
        assert manual.download_now() is False
        assert statuses[-1] == sched_mod.NO_REMOTE_DATA
        assert [t.id for t in store.load_all("tasks")] == ["mine"]
