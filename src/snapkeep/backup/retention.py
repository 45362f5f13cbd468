"""Snapshot retention.

Deletes snapshots past the daily threshold, keeping the newest successful
snapshot per ISO week and per calendar month inside the weekly and monthly
windows, and never the most recent successful snapshot.

A snapshot directory is first renamed to a ``.deleting`` tombstone, then
its catalog row is deleted, then the tombstone is removed. ``reconcile``
finishes any of those steps a crash left half done.
"""

import re
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

from loguru import logger

from ..db.schemas import BackupStatus
from ..errors import RetentionError
from .catalog import BackupCatalog
from .schemas import BackupRecord, RetentionPolicy

TOMBSTONE_SUFFIX = ".deleting"
SNAPSHOT_NAME_PATTERN = re.compile(r"^backup_\d+_[a-z]+$")
INTERRUPTED_ERROR = "interrupted"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _month_index(moment: datetime) -> int:
    return moment.year * 12 + moment.month


class RetentionManager:
    """Owns deletion of snapshots and their catalog records."""

    def __init__(
        self,
        catalog: BackupCatalog,
        backup_root: Path,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize retention manager.

        Args:
            catalog: Backup catalog
            backup_root: Directory holding one subdirectory per snapshot
            clock: Source of "now" (UTC)
        """
        self.catalog = catalog
        self.backup_root = backup_root
        self.clock = clock
        self.last_errors: list[RetentionError] = []

    def protected_ids(
        self, records: Iterable[BackupRecord], policy: RetentionPolicy
    ) -> set[str]:
        """Ids that cleanup must keep regardless of age.

        Args:
            records: Catalog records, newest first
            policy: Retention policy

        Returns:
            Set of protected backup ids
        """
        now = self.clock()
        successful = [r for r in records if r.status == BackupStatus.SUCCESS]
        protected: set[str] = set()
        if not successful:
            return protected

        protected.add(successful[0].id)

        weeks_seen: set[tuple[int, int]] = set()
        months_seen: set[int] = set()
        for record in successful:
            age = now - record.timestamp
            week = tuple(record.timestamp.isocalendar())[:2]
            if age <= timedelta(weeks=policy.weekly_keep_weeks) and week not in weeks_seen:
                weeks_seen.add(week)
                protected.add(record.id)

            month = _month_index(record.timestamp)
            if (
                _month_index(now) - month < policy.monthly_keep_months
                and month not in months_seen
            ):
                months_seen.add(month)
                protected.add(record.id)

        return protected

    def cleanup(self, policy: Optional[RetentionPolicy] = None) -> int:
        """Delete snapshots past retention.

        One snapshot failing to delete never stops the others; its error is
        logged and kept in ``last_errors``.

        Args:
            policy: Retention policy, defaults when None

        Returns:
            Number of snapshots deleted
        """
        policy = policy or RetentionPolicy()
        self.last_errors = []
        now = self.clock()

        records = self.catalog.list()
        protected = self.protected_ids(records, policy)
        threshold = timedelta(days=policy.daily_keep_days)

        deleted = 0
        for record in records:
            if record.status == BackupStatus.IN_PROGRESS or record.id in protected:
                continue
            if now - record.timestamp <= threshold:
                continue

            try:
                self.delete_snapshot(record.id)
            except Exception as e:
                error = RetentionError(record.id, e)
                self.last_errors.append(error)
                logger.warning(str(error))
                continue

            deleted += 1
            logger.info("Deleted expired backup {}", record.id)

        if deleted or self.last_errors:
            logger.info(
                "Retention cleanup: {} deleted, {} failed", deleted, len(self.last_errors)
            )
        return deleted

    def delete_snapshot(self, backup_id: str) -> None:
        """Remove a snapshot directory and its record via a tombstone."""
        directory = self.backup_root / backup_id
        tombstone = self.backup_root / f"{backup_id}{TOMBSTONE_SUFFIX}"

        if directory.exists():
            directory.rename(tombstone)
        self.catalog.delete(backup_id)
        if tombstone.exists():
            shutil.rmtree(tombstone)

    def reconcile(
        self,
        active_ids: Iterable[str] = (),
        stale_after: Optional[timedelta] = None,
    ) -> dict[str, int]:
        """Repair half-finished deletions and interrupted runs.

        Args:
            active_ids: Runs currently in progress, left untouched
            stale_after: in_progress rows younger than this are treated as
                live (another process may own them); None treats every
                in_progress row not in active_ids as interrupted

        Returns:
            Counts of tombstones, records and directories removed, and of
            interrupted runs marked failed
        """
        active = set(active_ids)
        now = self.clock()
        summary = {
            "tombstones_removed": 0,
            "records_removed": 0,
            "directories_removed": 0,
            "interrupted": 0,
        }

        if self.backup_root.is_dir():
            for path in sorted(self.backup_root.iterdir()):
                if path.is_dir() and path.name.endswith(TOMBSTONE_SUFFIX):
                    shutil.rmtree(path)
                    summary["tombstones_removed"] += 1

        known: set[str] = set()
        for record in self.catalog.list():
            if record.id in active:
                known.add(record.id)
                continue

            if (
                record.status == BackupStatus.IN_PROGRESS
                and stale_after is not None
                and now - record.timestamp < stale_after
            ):
                known.add(record.id)
                logger.info("Leaving recent in-progress backup {} alone", record.id)
                continue

            if record.status == BackupStatus.IN_PROGRESS:
                record.status = BackupStatus.FAILED
                record.error = INTERRUPTED_ERROR
                try:
                    self.catalog.finalize(record)
                except ValueError:
                    # Its owner finalized it since the listing
                    known.add(record.id)
                    continue
                summary["interrupted"] += 1
                logger.warning("Marked interrupted backup {} as failed", record.id)

            if not (self.backup_root / record.id).is_dir():
                self.catalog.delete(record.id)
                summary["records_removed"] += 1
                logger.warning("Removed record {} with no snapshot directory", record.id)
            else:
                known.add(record.id)

        if self.backup_root.is_dir():
            for path in sorted(self.backup_root.iterdir()):
                if (
                    path.is_dir()
                    and SNAPSHOT_NAME_PATTERN.match(path.name)
                    and path.name not in known
                ):
                    shutil.rmtree(path)
                    summary["directories_removed"] += 1
                    logger.warning("Removed snapshot directory {} with no record", path.name)

        return summary
