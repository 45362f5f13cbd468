"""Schemas for backup records, manifests, and restore reports."""

import hashlib
import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from ..db.schemas import BackupKind, BackupStatus
from ..errors import ManifestError

MANIFEST_FILENAME = "manifest.json"
MANIFEST_VERSION = 1
SUPPORTED_MANIFEST_VERSIONS = {1}


class ArtifactKind(str, Enum):
    """Resource class captured by one artifact."""

    DATABASE = "database"
    FILES = "files"
    CONFIG = "config"


# Structured data first: later steps reference its row counts.
ARTIFACT_ORDER = [ArtifactKind.DATABASE, ArtifactKind.FILES, ArtifactKind.CONFIG]


class RestoreStatus(str, Enum):
    """Outcome of restoring one artifact."""

    RESTORED = "restored"
    FAILED = "failed"
    SKIPPED = "skipped"


class IntegrityResult(BaseModel):
    """Seal over a snapshot directory."""

    verified: bool = False
    checksum: str = ""


class BackupRecord(BaseModel):
    """Catalog entry identifying one backup run."""

    id: str
    timestamp: datetime
    kind: BackupKind = BackupKind.FULL
    status: BackupStatus = BackupStatus.IN_PROGRESS
    size_bytes: Optional[int] = None
    duration_ms: Optional[int] = None
    artifacts: dict[str, str] = Field(default_factory=dict)
    integrity: IntegrityResult = Field(default_factory=IntegrityResult)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """True once the run reached success or failed."""
        return self.status != BackupStatus.IN_PROGRESS

    @property
    def size_human(self) -> str:
        """Get human-readable size."""
        size = self.size_bytes or 0
        if size < 1024:
            return f"{size} B"
        elif size < 1024 * 1024:
            return f"{size / 1024:.1f} KB"
        else:
            return f"{size / (1024 * 1024):.1f} MB"


class EnvironmentMetadata(BaseModel):
    """Runtime details needed to interpret a snapshot later."""

    runtime_version: str = ""
    platform: str = ""
    execution_mode: str = ""
    app_version: str = ""


class BackupManifest(BaseModel):
    """On-disk index of a snapshot. Source of truth for restore."""

    manifest_version: int = MANIFEST_VERSION
    id: str
    timestamp: datetime
    kind: BackupKind = BackupKind.FULL
    artifacts: dict[str, str] = Field(default_factory=dict)
    tables: dict[str, int] = Field(default_factory=dict)
    digests: dict[str, str] = Field(default_factory=dict)  # filename -> sha256
    checksum: Optional[str] = None
    metadata: EnvironmentMetadata = Field(default_factory=EnvironmentMetadata)

    def canonical_digest(self) -> str:
        """sha256 of the manifest with its seal fields (checksum, digests) left out."""
        body = self.model_dump(mode="json", exclude={"checksum", "digests"})
        encoded = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def write(self, snapshot_dir: Path) -> Path:
        """Write the manifest into a snapshot directory."""
        path = snapshot_dir / MANIFEST_FILENAME
        path.write_text(
            json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True),
            encoding="utf-8",
        )
        return path

    @classmethod
    def load(cls, snapshot_dir: Path) -> "BackupManifest":
        """Read and validate the manifest of a snapshot directory.

        Raises:
            FileNotFoundError: If the directory has no manifest
            ManifestError: If the manifest is malformed or its version is unsupported
        """
        path = snapshot_dir / MANIFEST_FILENAME
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ManifestError(f"Unreadable manifest {path}: {e}") from e

        version = data.get("manifest_version") if isinstance(data, dict) else None
        if version not in SUPPORTED_MANIFEST_VERSIONS:
            raise ManifestError(f"Unsupported manifest version {version!r} in {path}")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ManifestError(f"Invalid manifest {path}: {e}") from e


class RetentionPolicy(BaseModel):
    """Age thresholds governing snapshot deletion."""

    daily_keep_days: int = Field(default=7, ge=0)
    weekly_keep_weeks: int = Field(default=4, ge=0)
    monthly_keep_months: int = Field(default=12, ge=0)


class ArtifactOutcome(BaseModel):
    """Restore result for one artifact."""

    artifact: ArtifactKind
    status: RestoreStatus
    detail: str = ""


class RestoreReport(BaseModel):
    """Per-artifact summary of a restore call."""

    backup_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: list[ArtifactOutcome] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        """True when every artifact was restored."""
        return bool(self.outcomes) and all(
            o.status == RestoreStatus.RESTORED for o in self.outcomes
        )

    def outcome_for(self, artifact: ArtifactKind) -> Optional[ArtifactOutcome]:
        """Get the outcome recorded for an artifact."""
        for outcome in self.outcomes:
            if outcome.artifact == artifact:
                return outcome
        return None

    def to_dict(self) -> dict:
        """Convert to a JSON-ready dictionary."""
        data = self.model_dump(mode="json")
        data["success"] = self.success
        return data
