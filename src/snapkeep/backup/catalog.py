"""Backup catalog.

Persists one BackupRecord per snapshot directory so runs can be listed
and queried without walking the filesystem.
"""

import json
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update

from ..db.schemas import BackupKind, BackupStatus
from ..db.sqlite import Database
from .models import BackupRecordModel
from .schemas import BackupRecord, IntegrityResult


class BackupCatalog:
    """Queryable index over snapshot manifests."""

    def __init__(self, db: Database):
        """Initialize catalog.

        Args:
            db: Database instance holding the backup_records table
        """
        self.db = db

    def create(self, record: BackupRecord) -> BackupRecord:
        """Insert a new in-progress record."""
        if record.status != BackupStatus.IN_PROGRESS:
            raise ValueError(f"New records must be in_progress, got {record.status.value}")

        with self.db.get_session() as session:
            session.add(self._to_model(record))
        return record

    def finalize(self, record: BackupRecord) -> BackupRecord:
        """Move a record from in_progress to its terminal state.

        Raises:
            ValueError: If the record is not terminal, or was already finalized
        """
        if not record.is_terminal:
            raise ValueError("finalize() needs a terminal record")

        values = {
            "status": record.status.value,
            "size_bytes": record.size_bytes,
            "duration_ms": record.duration_ms,
            "artifacts": json.dumps(record.artifacts),
            "integrity_verified": record.integrity.verified,
            "checksum": record.integrity.checksum or None,
            "error": record.error,
        }

        with self.db.get_session() as session:
            result = session.execute(
                update(BackupRecordModel)
                .where(
                    BackupRecordModel.id == record.id,
                    BackupRecordModel.status == BackupStatus.IN_PROGRESS.value,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                raise ValueError(f"Backup {record.id} is not in progress")

        return record

    def get(self, backup_id: str) -> Optional[BackupRecord]:
        """Get a record by id."""
        with self.db.get_session() as session:
            row = session.get(BackupRecordModel, backup_id)
            return self._from_model(row) if row else None

    def list(self) -> list[BackupRecord]:
        """All records, newest first."""
        with self.db.get_session() as session:
            stmt = select(BackupRecordModel).order_by(
                BackupRecordModel.timestamp.desc(), BackupRecordModel.id.desc()
            )
            return [self._from_model(row) for row in session.execute(stmt).scalars().all()]

    def latest_successful(self) -> Optional[BackupRecord]:
        """Most recent record with status success."""
        with self.db.get_session() as session:
            stmt = (
                select(BackupRecordModel)
                .where(BackupRecordModel.status == BackupStatus.SUCCESS.value)
                .order_by(BackupRecordModel.timestamp.desc(), BackupRecordModel.id.desc())
                .limit(1)
            )
            row = session.execute(stmt).scalar_one_or_none()
            return self._from_model(row) if row else None

    def delete(self, backup_id: str) -> bool:
        """Delete a record. Returns True if a row was removed."""
        with self.db.get_session() as session:
            result = session.execute(
                delete(BackupRecordModel).where(BackupRecordModel.id == backup_id)
            )
            return result.rowcount > 0

    def _to_model(self, record: BackupRecord) -> BackupRecordModel:
        return BackupRecordModel(
            id=record.id,
            timestamp=record.timestamp.isoformat(timespec="microseconds"),
            kind=record.kind.value,
            status=record.status.value,
            size_bytes=record.size_bytes,
            duration_ms=record.duration_ms,
            artifacts=json.dumps(record.artifacts),
            integrity_verified=record.integrity.verified,
            checksum=record.integrity.checksum or None,
            error=record.error,
        )

    def _from_model(self, row: BackupRecordModel) -> BackupRecord:
        return BackupRecord(
            id=row.id,
            timestamp=datetime.fromisoformat(row.timestamp),
            kind=BackupKind(row.kind),
            status=BackupStatus(row.status),
            size_bytes=row.size_bytes,
            duration_ms=row.duration_ms,
            artifacts=json.loads(row.artifacts) if row.artifacts else {},
            integrity=IntegrityResult(
                verified=bool(row.integrity_verified),
                checksum=row.checksum or "",
            ),
            error=row.error,
        )
