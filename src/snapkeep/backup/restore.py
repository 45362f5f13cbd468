"""Restore from sealed snapshots.

Restores are refused outright unless the snapshot still matches the
checksum recorded in its manifest. Artifacts are then replayed in a fixed
order (structured data, files, configuration), each reported separately.
"""

import json
import shutil
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from dotenv import set_key
from loguru import logger
from sqlalchemy import delete, select

from ..db.models import DOMAIN_MODELS
from ..db.sqlite import Database
from ..errors import BackupNotFound, ManifestError
from .archive import ArchiveReader
from .exporters import CONFIG_FORMAT, DATABASE_FORMAT
from .integrity import IntegrityVerifier
from .retention import SNAPSHOT_NAME_PATTERN
from .schemas import (
    ARTIFACT_ORDER,
    ArtifactKind,
    ArtifactOutcome,
    BackupManifest,
    RestoreReport,
    RestoreStatus,
)


class RestoreMode(str, Enum):
    """Database restore mode."""

    REPLACE = "replace"  # Clear domain tables and restore
    MERGE = "merge"  # Add rows whose id is absent, keep existing


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RestoreCoordinator:
    """Replays a verified snapshot into the live system."""

    def __init__(
        self,
        db: Database,
        verifier: IntegrityVerifier,
        backup_root: Path,
        uploads_dir: Path,
        env_file: Path,
        archiver: ArchiveReader,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize restore coordinator.

        Args:
            db: Live structured store
            verifier: Checks snapshots before anything is touched
            backup_root: Directory holding one subdirectory per snapshot
            uploads_dir: Live uploads tree replaced by file restore
            env_file: dotenv file updated by config restore
            archiver: Reads the uploads archive
            clock: Source of report timestamps
        """
        self.db = db
        self.verifier = verifier
        self.backup_root = backup_root
        self.uploads_dir = uploads_dir
        self.env_file = env_file
        self.archiver = archiver
        self.clock = clock
        self._draining = False
        self._active = 0
        self._state_lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()

    def begin_drain(self) -> None:
        """Skip artifacts not yet started."""
        self._draining = True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no restore is running. Returns False on timeout."""
        return self._idle.wait(timeout)

    def load_manifest(self, backup_id: str) -> BackupManifest:
        """Load the manifest of a snapshot.

        Raises:
            BackupNotFound: If no such snapshot exists
            ManifestError: If the manifest is unusable
        """
        if not SNAPSHOT_NAME_PATTERN.match(backup_id):
            raise BackupNotFound(backup_id)

        snapshot_dir = self.backup_root / backup_id
        try:
            manifest = BackupManifest.load(snapshot_dir)
        except FileNotFoundError as e:
            raise BackupNotFound(backup_id) from e

        if manifest.id != backup_id:
            raise ManifestError(f"Manifest in {backup_id} describes {manifest.id}")
        return manifest

    def restore(self, backup_id: str, mode: RestoreMode = RestoreMode.REPLACE) -> RestoreReport:
        """Restore every artifact of a snapshot.

        Args:
            backup_id: Snapshot to restore
            mode: Database restore mode

        Returns:
            RestoreReport with one outcome per artifact

        Raises:
            BackupNotFound: If the snapshot does not exist
            ManifestError: If the manifest is unusable
            IntegrityViolation: If the snapshot fails verification; nothing is restored
        """
        with self._state_lock:
            self._active += 1
            self._idle.clear()
        try:
            return self._restore(backup_id, RestoreMode(mode))
        finally:
            with self._state_lock:
                self._active -= 1
                if not self._active:
                    self._idle.set()

    def _restore(self, backup_id: str, mode: RestoreMode) -> RestoreReport:
        manifest = self.load_manifest(backup_id)
        snapshot_dir = self.backup_root / backup_id
        self.verifier.verify_snapshot(manifest, snapshot_dir)
        logger.info("Restoring {} (verified, mode={})", backup_id, mode.value)

        report = RestoreReport(backup_id=backup_id, started_at=self.clock())
        restorers = {
            ArtifactKind.DATABASE: lambda path: self._restore_database(path, mode),
            ArtifactKind.FILES: self._restore_files,
            ArtifactKind.CONFIG: self._restore_config,
        }

        for artifact in ARTIFACT_ORDER:
            filename = manifest.artifacts.get(artifact.value)
            if filename is None:
                outcome = ArtifactOutcome(
                    artifact=artifact, status=RestoreStatus.SKIPPED, detail="not captured"
                )
            elif self._draining:
                outcome = ArtifactOutcome(
                    artifact=artifact, status=RestoreStatus.SKIPPED, detail="shutting down"
                )
            else:
                try:
                    detail = restorers[artifact](snapshot_dir / filename)
                    outcome = ArtifactOutcome(
                        artifact=artifact, status=RestoreStatus.RESTORED, detail=detail
                    )
                except Exception as e:
                    outcome = ArtifactOutcome(
                        artifact=artifact, status=RestoreStatus.FAILED, detail=str(e)
                    )

            log = logger.error if outcome.status == RestoreStatus.FAILED else logger.info
            log("Restore {} {}: {} {}", backup_id, artifact.value, outcome.status.value, outcome.detail)
            report.outcomes.append(outcome)

        report.finished_at = self.clock()
        return report

    # ========================================================================
    # Per-artifact restorers
    # ========================================================================

    def _restore_database(self, path: Path, mode: RestoreMode) -> str:
        data = json.loads(path.read_text(encoding="utf-8"))
        if data.get("format") != DATABASE_FORMAT:
            raise ValueError(f"Unsupported database artifact format: {data.get('format')!r}")

        rows = data.get("rows", {})
        inserted = 0
        skipped = 0

        with self.db.get_session() as session:
            if mode == RestoreMode.REPLACE:
                for model in reversed(DOMAIN_MODELS):
                    session.execute(delete(model))

            for model in DOMAIN_MODELS:
                table = model.__table__
                columns = set(table.columns.keys())
                table_rows = [
                    {k: v for k, v in row.items() if k in columns}
                    for row in rows.get(table.name, [])
                ]

                if mode == RestoreMode.MERGE:
                    existing = set(session.execute(select(model.id)).scalars().all())
                    fresh = [row for row in table_rows if row.get("id") not in existing]
                    skipped += len(table_rows) - len(fresh)
                    table_rows = fresh

                if table_rows:
                    session.execute(table.insert(), table_rows)
                    inserted += len(table_rows)

            if mode == RestoreMode.REPLACE:
                expected = data.get("tables", {})
                actual = self.db.table_counts(session)
                mismatched = sorted(
                    name for name, count in expected.items() if actual.get(name) != count
                )
                if mismatched:
                    raise ValueError(f"Row counts differ after restore: {', '.join(mismatched)}")

        if mode == RestoreMode.MERGE:
            return f"{inserted} records inserted, {skipped} already present"
        return f"{inserted} records"

    def _restore_files(self, path: Path) -> str:
        parent = self.uploads_dir.parent
        parent.mkdir(parents=True, exist_ok=True)
        staging = parent / f".{self.uploads_dir.name}.restoring"
        previous = parent / f".{self.uploads_dir.name}.previous"

        for leftover in (staging, previous):
            if leftover.exists():
                shutil.rmtree(leftover)

        try:
            self.archiver.extract(path, staging)
        except Exception:
            if staging.exists():
                shutil.rmtree(staging)
            raise

        if self.uploads_dir.exists():
            self.uploads_dir.rename(previous)
        staging.rename(self.uploads_dir)
        if previous.exists():
            shutil.rmtree(previous)

        count = sum(1 for p in self.uploads_dir.rglob("*") if p.is_file())
        return f"{count} files"

    def _restore_config(self, path: Path) -> str:
        data = json.loads(path.read_text(encoding="utf-8"))
        if data.get("format") != CONFIG_FORMAT:
            raise ValueError(f"Unsupported config artifact format: {data.get('format')!r}")

        values = data.get("values", {})
        self.env_file.parent.mkdir(parents=True, exist_ok=True)
        self.env_file.touch(exist_ok=True)
        for key, value in values.items():
            set_key(str(self.env_file), key, value)

        redacted = data.get("redacted", [])
        detail = f"{len(values)} keys"
        if redacted:
            detail += f", {len(redacted)} redacted left unchanged"
        return detail
