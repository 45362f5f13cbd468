"""Database model for the backup catalog."""

from typing import Optional

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..db.models import Base
from ..db.schemas import BackupStatus


class BackupRecordModel(Base):
    """One row per snapshot directory under the backup root."""

    __tablename__ = "backup_records"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    timestamp: Mapped[str] = mapped_column(String(32), index=True)  # ISO datetime, UTC
    kind: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(
        String(20), default=BackupStatus.IN_PROGRESS.value, index=True
    )
    size_bytes: Mapped[Optional[int]] = mapped_column(Integer)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    artifacts: Mapped[Optional[str]] = mapped_column(Text)  # JSON dict
    integrity_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    checksum: Mapped[Optional[str]] = mapped_column(String(64))
    error: Mapped[Optional[str]] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<BackupRecordModel(id={self.id}, status='{self.status}')>"
