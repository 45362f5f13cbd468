"""Backup orchestration.

Drives one backup run: snapshot directory, exporters, manifest, seal,
catalog record, notification. Runs are serialised by a single-flight lock.
"""

import platform
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence

from loguru import logger

from .. import __version__
from ..db.schemas import BackupKind, BackupStatus
from ..errors import BackupInProgress, ExportError, SubsystemDraining
from .catalog import BackupCatalog
from .exporters import DatabaseExporter, ResourceExporter
from .integrity import IntegrityVerifier
from .notify import BackupEvent, Notifier
from .schemas import (
    ARTIFACT_ORDER,
    BackupManifest,
    BackupRecord,
    EnvironmentMetadata,
)

CANCELLED_ERROR = "cancelled: shutting down"
SEAL_FAILED_ERROR = "integrity seal failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Cancelled(Exception):
    pass


class BackupOrchestrator:
    """Creates sealed, cataloged snapshots."""

    def __init__(
        self,
        catalog: BackupCatalog,
        exporters: Sequence[ResourceExporter],
        verifier: IntegrityVerifier,
        backup_root: Path,
        clock: Callable[[], datetime] = _utc_now,
        notifier: Optional[Notifier] = None,
        strict_integrity: bool = False,
        execution_mode: str = "development",
    ):
        """Initialize orchestrator.

        Args:
            catalog: Catalog receiving one record per run
            exporters: One exporter per artifact kind; run structured data first
            verifier: Seals finished snapshot directories
            backup_root: Directory holding one subdirectory per snapshot
            clock: Source of run timestamps (UTC)
            notifier: Receives the terminal record of every run
            strict_integrity: Record unverifiable snapshots as failed
            execution_mode: Recorded in every manifest
        """
        self.catalog = catalog
        self.exporters = sorted(exporters, key=lambda e: ARTIFACT_ORDER.index(e.artifact))
        self.verifier = verifier
        self.backup_root = backup_root
        self.clock = clock
        self.notifier = notifier
        self.strict_integrity = strict_integrity
        self.execution_mode = execution_mode

        self._lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._draining = False
        self._active_id: Optional[str] = None
        self._last_ms = 0

    @property
    def draining(self) -> bool:
        """True once begin_drain() has been called."""
        return self._draining

    @property
    def active_backup_id(self) -> Optional[str]:
        """Id of the run in progress, if any."""
        return self._active_id

    def begin_drain(self) -> None:
        """Refuse new runs and stop the current one after its current artifact."""
        if not self._draining:
            logger.info("Backup orchestrator draining")
        self._draining = True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no run is active. Returns False on timeout."""
        return self._idle.wait(timeout)

    def create_backup(self, kind: BackupKind = BackupKind.FULL) -> BackupRecord:
        """Run one backup.

        Exporter failures do not raise; they produce a failed record.

        Args:
            kind: Backup kind recorded on the record and manifest

        Returns:
            Terminal BackupRecord

        Raises:
            BackupInProgress: If another run holds the lock
            SubsystemDraining: If the orchestrator is draining
        """
        if self._draining:
            raise SubsystemDraining("backup")
        if not self._lock.acquire(blocking=False):
            raise BackupInProgress(self._active_id)

        try:
            if self._draining:
                raise SubsystemDraining("backup")
            self._idle.clear()
            return self._run(BackupKind(kind))
        finally:
            self._active_id = None
            self._idle.set()
            self._lock.release()

    def _next_id(self, kind: BackupKind, timestamp: datetime) -> str:
        ms = max(int(timestamp.timestamp() * 1000), self._last_ms + 1)
        while (self.backup_root / f"backup_{ms}_{kind.value}").exists():
            ms += 1
        self._last_ms = ms
        return f"backup_{ms}_{kind.value}"

    def _metadata(self) -> EnvironmentMetadata:
        return EnvironmentMetadata(
            runtime_version=f"python {platform.python_version()}",
            platform=sys.platform,
            execution_mode=self.execution_mode,
            app_version=__version__,
        )

    def _run(self, kind: BackupKind) -> BackupRecord:
        started = time.monotonic()
        timestamp = self.clock()
        backup_id = self._next_id(kind, timestamp)
        self._active_id = backup_id

        record = BackupRecord(id=backup_id, timestamp=timestamp, kind=kind)
        self.catalog.create(record)
        snapshot_dir = self.backup_root / backup_id
        logger.info("Starting {} backup {}", kind.value, backup_id)

        try:
            snapshot_dir.mkdir(parents=True)
            tables: dict[str, int] = {}

            for exporter in self.exporters:
                if self._draining:
                    raise _Cancelled()
                record.artifacts[exporter.artifact.value] = exporter.export(snapshot_dir)
                if isinstance(exporter, DatabaseExporter):
                    tables = dict(exporter.last_table_counts)

            if self._draining:
                raise _Cancelled()

            manifest = BackupManifest(
                id=backup_id,
                timestamp=timestamp,
                kind=kind,
                artifacts=dict(record.artifacts),
                tables=tables,
                metadata=self._metadata(),
            )
            manifest.write(snapshot_dir)

            record.integrity = self.verifier.seal(snapshot_dir)
            if record.integrity.verified:
                manifest.checksum = record.integrity.checksum
                manifest.digests = self.verifier.snapshot_digests(snapshot_dir)
                manifest.write(snapshot_dir)
                logger.info("Sealed {} checksum={}", backup_id, record.integrity.checksum)
            elif self.strict_integrity:
                record.status = BackupStatus.FAILED
                record.error = SEAL_FAILED_ERROR
                logger.error("Backup {} could not be sealed", backup_id)
            else:
                logger.warning("Backup {} could not be sealed, keeping it unverified", backup_id)

            if record.status == BackupStatus.IN_PROGRESS:
                record.status = BackupStatus.SUCCESS

        except ExportError as e:
            record.status = BackupStatus.FAILED
            record.error = str(e)
            logger.error("Backup {} failed: {}", backup_id, e)
        except _Cancelled:
            record.status = BackupStatus.FAILED
            record.error = CANCELLED_ERROR
            logger.warning("Backup {} cancelled by shutdown", backup_id)
        except Exception as e:
            record.status = BackupStatus.FAILED
            record.error = str(e) or type(e).__name__
            logger.exception("Backup {} failed unexpectedly", backup_id)

        record.size_bytes = sum(
            (snapshot_dir / name).stat().st_size
            for name in record.artifacts.values()
            if (snapshot_dir / name).is_file()
        )
        record.duration_ms = int((time.monotonic() - started) * 1000)

        try:
            self.catalog.finalize(record)
        except ValueError:
            # Another process's reconcile finalized the row during this run
            stored = self.catalog.get(backup_id)
            logger.warning(
                "Backup {} was finalized elsewhere as {}, keeping that outcome",
                backup_id,
                stored.status.value if stored else "deleted",
            )
            return stored or record

        logger.info(
            "Backup {} finished: {} ({}, {} ms)",
            backup_id,
            record.status.value,
            record.size_human,
            record.duration_ms,
        )

        if self.notifier is not None:
            try:
                self.notifier.notify(BackupEvent.from_record(record))
            except Exception as e:
                logger.warning("Notification for {} failed: {}", backup_id, e)

        return record
