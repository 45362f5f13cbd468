"""Composition root for the backup subsystem.

Builds the catalog, exporters, verifier, orchestrator, retention manager,
restore coordinator and notifier from explicit dependencies, and exposes
the handful of operations the CLI, HTTP surface and jobs call.
"""

import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from ..config import DEFAULT_CONFIG_KEYS, Config
from ..db.schemas import BackupKind
from ..db.sqlite import Database
from ..errors import BackupNotFound
from .archive import TarArchiver
from .catalog import BackupCatalog
from .exporters import ConfigExporter, DatabaseExporter, FileArchiveExporter
from .integrity import IntegrityReport, IntegrityVerifier
from .notify import CompositeNotifier, LogNotifier, Notifier, WebhookNotifier
from .orchestrator import BackupOrchestrator
from .restore import RestoreCoordinator, RestoreMode
from .retention import RetentionManager
from .schemas import BackupRecord, IntegrityResult, RestoreReport, RetentionPolicy

# Seconds each exporter may take when no export timeout is configured
DEFAULT_EXPORT_TIMEOUT = 300.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BackupService:
    """Owns one wired set of backup components."""

    def __init__(
        self,
        db: Database,
        backup_root: Path,
        uploads_dir: Path,
        env_file: Path,
        archiver=None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = _utc_now,
        policy: Optional[RetentionPolicy] = None,
        config_keys: tuple[str, ...] = DEFAULT_CONFIG_KEYS,
        environ=None,
        strict_integrity: bool = False,
        export_timeout: Optional[float] = None,
        execution_mode: str = "development",
    ):
        """Wire the subsystem.

        Args:
            db: Structured store, catalog table included
            backup_root: Directory holding one subdirectory per snapshot
            uploads_dir: Uploads tree captured and restored
            env_file: dotenv file captured and restored
            archiver: ArchiveWriter/ArchiveReader, TarArchiver when None
            notifier: Receives terminal backup records
            clock: Source of "now" (UTC) for every component
            policy: Retention policy used by cleanup
            config_keys: Allow-listed configuration keys captured from the
                environment or the env file
            environ: Process environment, os.environ when None
            strict_integrity: Record unverifiable snapshots as failed
            export_timeout: Per-export timeout in seconds
            execution_mode: Recorded in manifests
        """
        self.db = db
        self.backup_root = backup_root
        self.policy = policy or RetentionPolicy()
        self.archiver = archiver or TarArchiver(timeout=export_timeout or DEFAULT_EXPORT_TIMEOUT)

        self.catalog = BackupCatalog(db)
        self.verifier = IntegrityVerifier(db, clock=clock)
        self.orchestrator = BackupOrchestrator(
            catalog=self.catalog,
            exporters=[
                DatabaseExporter(db, timeout=export_timeout, clock=clock),
                FileArchiveExporter(uploads_dir, self.archiver),
                ConfigExporter(env_file, config_keys, environ=environ, clock=clock),
            ],
            verifier=self.verifier,
            backup_root=backup_root,
            clock=clock,
            notifier=notifier,
            strict_integrity=strict_integrity,
            execution_mode=execution_mode,
        )
        # Longest a live run can take with every exporter hitting its timeout
        self.stale_after = timedelta(
            seconds=(export_timeout or DEFAULT_EXPORT_TIMEOUT) * len(self.orchestrator.exporters)
        )
        self.retention = RetentionManager(self.catalog, backup_root, clock=clock)
        self.restorer = RestoreCoordinator(
            db=db,
            verifier=self.verifier,
            backup_root=backup_root,
            uploads_dir=uploads_dir,
            env_file=env_file,
            archiver=self.archiver,
            clock=clock,
        )

    @classmethod
    def from_config(cls, config: Config, db: Optional[Database] = None) -> "BackupService":
        """Build a service from application configuration."""
        if db is None:
            db = Database(str(config.db_path))
            db.create_tables()

        notifiers: list[Notifier] = [LogNotifier()]
        if config.webhook_url:
            notifiers.append(WebhookNotifier(config.webhook_url))

        return cls(
            db=db,
            backup_root=config.backup_dir,
            uploads_dir=config.uploads_dir,
            env_file=config.env_file,
            archiver=TarArchiver(timeout=config.export_timeout),
            notifier=CompositeNotifier(
                notifiers,
                on_success=config.notify_on_success,
                on_failure=config.notify_on_failure,
            ),
            policy=config.retention_policy(),
            config_keys=tuple(config.config_keys),
            strict_integrity=config.strict_integrity,
            export_timeout=config.export_timeout,
            execution_mode=config.app_env,
        )

    # ========================================================================
    # Operations
    # ========================================================================

    def create_backup(self, kind: BackupKind = BackupKind.FULL) -> BackupRecord:
        """Run one backup."""
        self.backup_root.mkdir(parents=True, exist_ok=True)
        return self.orchestrator.create_backup(kind)

    def list_backups(self) -> list[BackupRecord]:
        """All backups, newest first."""
        return self.catalog.list()

    def get_backup(self, backup_id: str) -> BackupRecord:
        """Get a backup record.

        Raises:
            BackupNotFound: If there is no such record
        """
        record = self.catalog.get(backup_id)
        if record is None:
            raise BackupNotFound(backup_id)
        return record

    def verify_backup(self, backup_id: str) -> IntegrityResult:
        """Re-seal a snapshot and compare it with its manifest."""
        self.get_backup(backup_id)
        return self.verifier.seal(self.backup_root / backup_id)

    def restore_backup(
        self, backup_id: str, mode: RestoreMode = RestoreMode.REPLACE
    ) -> RestoreReport:
        """Restore a snapshot into the live system."""
        return self.restorer.restore(backup_id, mode)

    def cleanup(self, policy: Optional[RetentionPolicy] = None) -> int:
        """Apply retention."""
        return self.retention.cleanup(policy or self.policy)

    def reconcile(self) -> dict[str, int]:
        """Repair half-finished deletions and interrupted runs.

        Runs younger than ``stale_after`` may belong to another process and
        are left alone.
        """
        active = self.orchestrator.active_backup_id
        return self.retention.reconcile(
            active_ids=[active] if active else [], stale_after=self.stale_after
        )

    def run_integrity_check(self, repair: bool = True) -> IntegrityReport:
        """Sweep the live store."""
        return self.verifier.run_full_integrity_check(repair=repair)

    # ========================================================================
    # Shutdown
    # ========================================================================

    @property
    def draining(self) -> bool:
        """True once drain() has been called."""
        return self.orchestrator.draining

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Stop accepting work and wait for the active backup and restores.

        Both finish the artifact they are writing; the timeout is shared.

        Returns:
            True if the subsystem went idle within timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        self.orchestrator.begin_drain()
        self.restorer.begin_drain()

        idle = self.orchestrator.wait_idle(timeout)
        if not idle:
            logger.warning("Backup still running after {}s drain timeout", timeout)

        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        if not self.restorer.wait_idle(remaining):
            logger.warning("Restore still running after {}s drain timeout", timeout)
            idle = False
        return idle
