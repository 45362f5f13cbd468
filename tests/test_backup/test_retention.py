"""Tests for retention cleanup and reconciliation."""

from datetime import timedelta
from pathlib import Path

import pytest

from snapkeep.backup.catalog import BackupCatalog
from snapkeep.backup.retention import INTERRUPTED_ERROR, TOMBSTONE_SUFFIX, RetentionManager
from snapkeep.backup.schemas import BackupRecord, RetentionPolicy
from snapkeep.db.schemas import BackupKind, BackupStatus
from snapkeep.db.sqlite import Database
from snapkeep.errors import RetentionError


@pytest.fixture
def catalog(db: Database) -> BackupCatalog:
    return BackupCatalog(db)


@pytest.fixture
def manager(catalog: BackupCatalog, backup_root: Path, clock) -> RetentionManager:
    return RetentionManager(catalog, backup_root, clock=clock)


@pytest.fixture
def add_backup(catalog: BackupCatalog, backup_root: Path, clock):
    """Create a snapshot directory and catalog record aged relative to the clock."""
    counter = iter(range(1, 1000))

    def _add(age: timedelta, status: BackupStatus = BackupStatus.SUCCESS) -> str:
        timestamp = clock.now - age
        backup_id = f"backup_{int(timestamp.timestamp() * 1000)}{next(counter):03d}_full"
        record = BackupRecord(id=backup_id, timestamp=timestamp, kind=BackupKind.FULL)
        catalog.create(record)
        if status != BackupStatus.IN_PROGRESS:
            record.status = status
            catalog.finalize(record)
        snapshot = backup_root / backup_id
        snapshot.mkdir()
        (snapshot / "database.json").write_text("{}")
        return backup_id

    return _add


DAILY_ONLY = RetentionPolicy(daily_keep_days=7, weekly_keep_weeks=0, monthly_keep_months=0)


class TestCleanup:
    """Tests for RetentionManager.cleanup."""

    def test_deletes_only_expired(self, manager, add_backup, catalog, backup_root):
        """Test that backups older than the daily window are removed."""
        recent = add_backup(timedelta(days=1))
        old = add_backup(timedelta(days=10))
        older = add_backup(timedelta(days=20))

        deleted = manager.cleanup(DAILY_ONLY)

        assert deleted == 2
        assert [r.id for r in catalog.list()] == [recent]
        assert not (backup_root / old).exists()
        assert not (backup_root / older).exists()
        assert not list(backup_root.glob(f"*{TOMBSTONE_SUFFIX}"))

    def test_boundary_age_kept(self, manager, add_backup, catalog):
        """Test that a backup exactly at the threshold is kept."""
        add_backup(timedelta(hours=1))
        at_edge = add_backup(timedelta(days=7))

        assert manager.cleanup(DAILY_ONLY) == 0
        assert catalog.get(at_edge) is not None

    @pytest.mark.parametrize("daily", [0, 1, 7, 30])
    def test_latest_successful_never_deleted(self, manager, add_backup, catalog, daily):
        """Test that the newest success survives any daily threshold."""
        latest = add_backup(timedelta(days=90))
        add_backup(timedelta(days=100))
        failed = add_backup(timedelta(days=60), status=BackupStatus.FAILED)

        manager.cleanup(RetentionPolicy(
            daily_keep_days=daily, weekly_keep_weeks=0, monthly_keep_months=0,
        ))

        ids = {r.id for r in catalog.list()}
        assert latest in ids
        assert failed not in ids

    def test_in_progress_never_deleted(self, manager, add_backup, catalog):
        """Test that a running backup is left alone."""
        add_backup(timedelta(days=1))
        running = add_backup(timedelta(days=30), status=BackupStatus.IN_PROGRESS)

        manager.cleanup(DAILY_ONLY)

        assert catalog.get(running) is not None

    def test_weekly_tier(self, manager, add_backup, catalog):
        """Test that the newest backup of each recent ISO week is kept."""
        # Clock is Saturday 2024-06-15
        wed = add_backup(timedelta(days=10))   # 2024-06-05, week 23
        tue = add_backup(timedelta(days=11))   # 2024-06-04, week 23
        sun = add_backup(timedelta(days=20))   # 2024-05-26, week 21

        deleted = manager.cleanup(RetentionPolicy(
            daily_keep_days=7, weekly_keep_weeks=4, monthly_keep_months=0,
        ))

        assert deleted == 1
        assert {r.id for r in catalog.list()} == {wed, sun}
        assert catalog.get(tue) is None

    def test_monthly_tier(self, manager, add_backup, catalog):
        """Test that the newest backup of each recent month is kept."""
        may_late = add_backup(timedelta(days=26))    # 2024-05-20
        add_backup(timedelta(days=36))               # 2024-05-10
        april = add_backup(timedelta(days=75))       # 2024-04-01
        add_backup(timedelta(days=531))              # 2023-01-01

        deleted = manager.cleanup(RetentionPolicy(
            daily_keep_days=7, weekly_keep_weeks=0, monthly_keep_months=12,
        ))

        assert deleted == 2
        assert {r.id for r in catalog.list()} == {may_late, april}

    def test_failure_does_not_abort_cleanup(self, manager, add_backup, catalog, monkeypatch):
        """Test that one failed deletion is collected and the rest continue."""
        add_backup(timedelta(days=1))
        stuck = add_backup(timedelta(days=10))
        gone = add_backup(timedelta(days=20))

        real_delete = catalog.delete

        def flaky_delete(backup_id):
            if backup_id == stuck:
                raise OSError("database is locked")
            return real_delete(backup_id)

        monkeypatch.setattr(catalog, "delete", flaky_delete)

        deleted = manager.cleanup(DAILY_ONLY)

        assert deleted == 1
        assert catalog.get(gone) is None
        assert len(manager.last_errors) == 1
        assert isinstance(manager.last_errors[0], RetentionError)
        assert manager.last_errors[0].backup_id == stuck


class TestReconcile:
    """Tests for RetentionManager.reconcile."""

    def test_finishes_half_deleted_snapshot(self, manager, add_backup, catalog, backup_root):
        """Test that a tombstone plus dangling record are both removed."""
        backup_id = add_backup(timedelta(days=10))
        (backup_root / backup_id).rename(backup_root / f"{backup_id}{TOMBSTONE_SUFFIX}")

        summary = manager.reconcile()

        assert summary["tombstones_removed"] == 1
        assert summary["records_removed"] == 1
        assert catalog.get(backup_id) is None
        assert list(backup_root.iterdir()) == []

    def test_removes_directory_without_record(self, manager, backup_root):
        """Test that an unrecorded snapshot directory is removed."""
        (backup_root / "backup_1700000000000_full").mkdir()
        (backup_root / "notes").mkdir()

        summary = manager.reconcile()

        assert summary["directories_removed"] == 1
        assert not (backup_root / "backup_1700000000000_full").exists()
        assert (backup_root / "notes").exists()

    def test_marks_interrupted_runs_failed(self, manager, add_backup, catalog):
        """Test that stale in-progress records become failed."""
        backup_id = add_backup(timedelta(hours=3), status=BackupStatus.IN_PROGRESS)

        summary = manager.reconcile()

        record = catalog.get(backup_id)
        assert summary["interrupted"] == 1
        assert record.status == BackupStatus.FAILED
        assert record.error == INTERRUPTED_ERROR

    def test_active_run_untouched(self, manager, add_backup, catalog, backup_root):
        """Test that the run in progress is skipped."""
        backup_id = add_backup(timedelta(0), status=BackupStatus.IN_PROGRESS)

        summary = manager.reconcile(active_ids=[backup_id])

        assert summary == {
            "tombstones_removed": 0,
            "records_removed": 0,
            "directories_removed": 0,
            "interrupted": 0,
        }
        assert catalog.get(backup_id).status == BackupStatus.IN_PROGRESS
        assert (backup_root / backup_id).exists()

    def test_consistent_state_is_noop(self, manager, add_backup):
        """Test that a clean catalog reports nothing."""
        add_backup(timedelta(days=1))

        assert not any(manager.reconcile().values())

    def test_recent_in_progress_left_for_its_owner(self, manager, add_backup, catalog, backup_root):
        """Test that an in-progress row younger than the staleness bound stays live."""
        live = add_backup(timedelta(0), status=BackupStatus.IN_PROGRESS)
        stale = add_backup(timedelta(hours=3), status=BackupStatus.IN_PROGRESS)

        summary = manager.reconcile(stale_after=timedelta(hours=1))

        assert summary["interrupted"] == 1
        assert catalog.get(live).status == BackupStatus.IN_PROGRESS
        assert (backup_root / live).exists()
        assert catalog.get(stale).error == INTERRUPTED_ERROR

    def test_row_finalized_by_owner_is_kept(self, manager, add_backup, catalog, backup_root, monkeypatch):
        """Test that losing the finalize race to the owning run is not an error."""
        backup_id = add_backup(timedelta(hours=3), status=BackupStatus.IN_PROGRESS)
        finalize = catalog.finalize

        def owner_wins(record):
            owned = catalog.get(record.id)
            owned.status = BackupStatus.SUCCESS
            finalize(owned)
            finalize(record)

        monkeypatch.setattr(catalog, "finalize", owner_wins)

        summary = manager.reconcile()

        assert summary["interrupted"] == 0
        assert catalog.get(backup_id).status == BackupStatus.SUCCESS
        assert (backup_root / backup_id).exists()
