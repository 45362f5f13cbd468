"""Integrity verification.

Two independent jobs: sealing snapshot directories with an aggregate
checksum, and sweeping the live store for consistency problems.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from loguru import logger
from sqlalchemy import and_, func, or_, select, update

from ..db.models import Activity, FinancialRecord, Incident, Property, Resident, User
from ..db.schemas import ResidentStatus
from ..db.sqlite import Database
from ..errors import IntegrityViolation, ManifestError
from .schemas import MANIFEST_FILENAME, BackupManifest, IntegrityResult

CHUNK_SIZE = 1024 * 1024

# (child model, foreign key column, parent model)
RELATIONSHIPS = [
    (Resident, Resident.property_id, Property),
    (Incident, Incident.resident_id, Resident),
    (Incident, Incident.property_id, Property),
    (FinancialRecord, FinancialRecord.resident_id, Resident),
    (FinancialRecord, FinancialRecord.property_id, Property),
    (Activity, Activity.user_id, User),
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def file_digest(path: Path) -> str:
    """sha256 of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def aggregate_checksum(digests: dict[str, str]) -> str:
    """Combine per-file digests into one checksum, independent of listing order."""
    lines = "".join(f"{name}:{digests[name]}\n" for name in sorted(digests))
    return hashlib.sha256(lines.encode("utf-8")).hexdigest()


class IssueSeverity(str, Enum):
    """Severity level for integrity issues."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class IntegrityIssue:
    """An integrity issue found during the sweep."""

    severity: IssueSeverity
    category: str
    message: str
    count: int = 0

    def __str__(self) -> str:
        """String representation."""
        return f"[{self.severity.value.upper()}] {self.category}: {self.message}"


@dataclass
class IntegrityReport:
    """Report from a live consistency sweep."""

    checked_at: str
    orphaned_records: int = 0
    orphans: dict[str, int] = field(default_factory=dict)
    invalid_statuses: int = 0
    date_violations: int = 0
    stale_counters: int = 0
    fixed_records: int = 0
    repair_error: Optional[str] = None
    issues: list[IntegrityIssue] = field(default_factory=list)

    @property
    def critical_count(self) -> int:
        """Count of critical issues."""
        return sum(1 for i in self.issues if i.severity == IssueSeverity.CRITICAL)

    @property
    def has_critical_issues(self) -> bool:
        """True when an operator needs to act."""
        return self.critical_count > 0

    @property
    def passed(self) -> bool:
        """True when nothing was detected, or only counters that were repaired."""
        return (
            self.orphaned_records == 0
            and self.invalid_statuses == 0
            and self.date_violations == 0
            and self.stale_counters <= self.fixed_records
            and self.repair_error is None
        )

    def get_issues_by_category(self, category: str) -> list[IntegrityIssue]:
        """Get issues of a specific category."""
        return [i for i in self.issues if i.category == category]

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "checked_at": self.checked_at,
            "orphaned_records": self.orphaned_records,
            "orphans": dict(self.orphans),
            "invalid_statuses": self.invalid_statuses,
            "date_violations": self.date_violations,
            "stale_counters": self.stale_counters,
            "fixed_records": self.fixed_records,
            "repair_error": self.repair_error,
            "passed": self.passed,
            "issues": [
                {
                    "severity": i.severity.value,
                    "category": i.category,
                    "message": i.message,
                    "count": i.count,
                }
                for i in self.issues
            ],
        }


class IntegrityVerifier:
    """Seals snapshots and sweeps the live store."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = _utc_now):
        """Initialize verifier.

        Args:
            db: Live structured store, used by the sweep only
            clock: Source of "today" for future-date checks
        """
        self.db = db
        self.clock = clock

    # ========================================================================
    # Snapshot sealing
    # ========================================================================

    def artifact_digests(self, snapshot_dir: Path) -> dict[str, str]:
        """sha256 of every readable file in a snapshot, except the manifest."""
        digests = {}
        if not snapshot_dir.is_dir():
            return digests

        for path in sorted(snapshot_dir.iterdir()):
            if path.name == MANIFEST_FILENAME or not path.is_file():
                continue
            try:
                digests[path.name] = file_digest(path)
            except OSError as e:
                logger.warning("Cannot read artifact {}: {}", path, e)
        return digests

    def snapshot_digests(
        self, snapshot_dir: Path, manifest: Optional[BackupManifest] = None
    ) -> dict[str, str]:
        """Everything a seal covers: artifact digests plus the canonical manifest.

        Args:
            snapshot_dir: Snapshot directory
            manifest: Manifest to cover; read from snapshot_dir when None

        Raises:
            ManifestError: If the manifest on disk is unusable
        """
        digests = self.artifact_digests(snapshot_dir)
        if manifest is None:
            try:
                manifest = BackupManifest.load(snapshot_dir)
            except FileNotFoundError:
                return digests
        digests[MANIFEST_FILENAME] = manifest.canonical_digest()
        return digests

    def seal(self, snapshot_dir: Path) -> IntegrityResult:
        """Compute the aggregate checksum of a snapshot directory.

        The checksum covers every artifact and the manifest minus its seal
        fields. Read-only. If the directory already carries a sealed
        manifest, the fresh checksum must also match it for the result to
        be verified.

        Args:
            snapshot_dir: Snapshot directory

        Returns:
            IntegrityResult; verified is False when there are no readable
            artifacts or the recorded checksum disagrees
        """
        digests = self.artifact_digests(snapshot_dir)
        if not digests:
            return IntegrityResult(verified=False, checksum="")

        try:
            manifest = BackupManifest.load(snapshot_dir)
        except FileNotFoundError:
            manifest = None
        except ManifestError as e:
            logger.warning("Sealing {} against unreadable manifest: {}", snapshot_dir, e)
            return IntegrityResult(verified=False, checksum=aggregate_checksum(digests))

        if manifest is not None:
            digests[MANIFEST_FILENAME] = manifest.canonical_digest()
        checksum = aggregate_checksum(digests)

        if manifest is not None and manifest.checksum is not None and manifest.checksum != checksum:
            return IntegrityResult(verified=False, checksum=checksum)

        return IntegrityResult(verified=True, checksum=checksum)

    def verify_snapshot(self, manifest: BackupManifest, snapshot_dir: Path) -> str:
        """Check a snapshot against its manifest before it is used.

        Returns:
            The verified checksum

        Raises:
            IntegrityViolation: If the snapshot is unsealed, incomplete, or altered
        """
        if not manifest.checksum:
            raise IntegrityViolation(manifest.id, reason="snapshot was never sealed")

        missing = [
            filename
            for filename in manifest.artifacts.values()
            if not (snapshot_dir / filename).is_file()
        ]
        if missing:
            raise IntegrityViolation(
                manifest.id,
                expected=manifest.checksum,
                reason=f"missing artifact(s): {', '.join(sorted(missing))}",
            )

        digests = self.snapshot_digests(snapshot_dir, manifest)
        actual = aggregate_checksum(digests)
        if actual != manifest.checksum:
            changed = sorted(
                name
                for name in set(digests) | set(manifest.digests)
                if digests.get(name) != manifest.digests.get(name)
            )
            reason = "checksum mismatch"
            if changed and manifest.digests:
                reason += f" in {', '.join(changed)}"
            raise IntegrityViolation(
                manifest.id, expected=manifest.checksum, actual=actual, reason=reason
            )

        return actual

    # ========================================================================
    # Live consistency sweep
    # ========================================================================

    def run_full_integrity_check(self, repair: bool = True) -> IntegrityReport:
        """Run every consistency check against the live store.

        Detection always completes before repair starts; a failed repair is
        recorded on the report and never hides detection counts.

        Args:
            repair: Recompute stale occupancy counters

        Returns:
            IntegrityReport
        """
        report = IntegrityReport(checked_at=self.clock().isoformat())

        with self.db.get_session() as session:
            self._check_orphans(session, report)
            self._check_status_combinations(session, report)
            self._check_date_ordering(session, report)
            report.stale_counters = len(self._stale_occupancy(session))

        if repair:
            try:
                report.fixed_records = self.fix_property_occupancy_counts()
            except Exception as e:
                report.repair_error = str(e)
                logger.warning("Occupancy counter repair failed: {}", e)

        if report.fixed_records:
            report.issues.append(IntegrityIssue(
                severity=IssueSeverity.INFO,
                category="occupancy",
                message=f"Repaired {report.fixed_records} occupancy counter(s)",
                count=report.fixed_records,
            ))
        unrepaired = report.stale_counters - report.fixed_records
        if unrepaired > 0:
            report.issues.append(IntegrityIssue(
                severity=IssueSeverity.WARNING,
                category="occupancy",
                message=f"{unrepaired} property occupancy counter(s) disagree with "
                "the active resident count",
                count=unrepaired,
            ))

        log = logger.warning if not report.passed else logger.info
        log(
            "Integrity sweep: {} orphaned, {} invalid status, {} date violations, "
            "{} stale counters, {} fixed",
            report.orphaned_records,
            report.invalid_statuses,
            report.date_violations,
            report.stale_counters,
            report.fixed_records,
        )
        return report

    def _stale_occupancy(self, session) -> list[tuple[str, Optional[int], int]]:
        """(property id, stored counter, active resident count) for each mismatch."""
        active_counts = (
            select(Resident.property_id, func.count().label("active"))
            .where(Resident.status == ResidentStatus.ACTIVE.value)
            .group_by(Resident.property_id)
            .subquery()
        )
        stmt = (
            select(
                Property.id,
                Property.occupied_units,
                func.coalesce(active_counts.c.active, 0),
            )
            .outerjoin(active_counts, active_counts.c.property_id == Property.id)
        )
        return [
            (prop_id, current, actual)
            for prop_id, current, actual in session.execute(stmt).all()
            if current != actual
        ]

    def fix_property_occupancy_counts(self) -> int:
        """Set each property's occupied_units to its active resident count.

        Each correction runs in its own short transaction and only applies
        if the counter still holds the value that was read.

        Returns:
            Number of properties corrected
        """
        with self.db.get_session() as session:
            stale = self._stale_occupancy(session)

        fixed = 0
        for prop_id, current, actual in stale:
            unchanged = (
                Property.occupied_units.is_(None)
                if current is None
                else Property.occupied_units == current
            )
            with self.db.get_session() as session:
                result = session.execute(
                    update(Property)
                    .where(Property.id == prop_id, unchanged)
                    .values(occupied_units=actual)
                )
                if result.rowcount:
                    fixed += 1
                    logger.info(
                        "Property {} occupied_units {} -> {}", prop_id, current, actual
                    )
        return fixed

    def _check_orphans(self, session, report: IntegrityReport) -> None:
        # Per relationship for the breakdown; per child table for the total,
        # so a row with two dangling references counts once.
        dangling_by_child: dict = {}
        for child, fk, parent in RELATIONSHIPS:
            dangling = and_(
                fk.is_not(None),
                ~select(parent.id).where(parent.id == fk).exists(),
            )
            dangling_by_child.setdefault(child, []).append(dangling)

            count = session.execute(
                select(func.count()).select_from(child).where(dangling)
            ).scalar() or 0

            report.orphans[f"{child.__tablename__}.{fk.key}"] = count
            if count:
                report.issues.append(IntegrityIssue(
                    severity=IssueSeverity.CRITICAL,
                    category="orphaned_records",
                    message=f"{count} {child.__tablename__} row(s) reference a missing "
                    f"{parent.__tablename__} via {fk.key}",
                    count=count,
                ))

        for child, conditions in dangling_by_child.items():
            report.orphaned_records += session.execute(
                select(func.count()).select_from(child).where(or_(*conditions))
            ).scalar() or 0

    def _check_status_combinations(self, session, report: IntegrityReport) -> None:
        count = session.execute(
            select(func.count()).select_from(Resident).where(or_(
                and_(
                    Resident.status == ResidentStatus.MOVED_OUT.value,
                    Resident.move_out_date.is_(None),
                ),
                and_(
                    Resident.status == ResidentStatus.ACTIVE.value,
                    Resident.move_out_date.is_not(None),
                ),
            ))
        ).scalar() or 0

        report.invalid_statuses = count
        if count:
            report.issues.append(IntegrityIssue(
                severity=IssueSeverity.ERROR,
                category="status",
                message=f"{count} resident(s) with a status that contradicts their move-out date",
                count=count,
            ))

    def _check_date_ordering(self, session, report: IntegrityReport) -> None:
        today = self.clock().date().isoformat()
        count = session.execute(
            select(func.count()).select_from(Resident).where(or_(
                and_(
                    Resident.move_in_date.is_not(None),
                    Resident.move_out_date.is_not(None),
                    Resident.move_in_date > Resident.move_out_date,
                ),
                Resident.move_in_date > today,
            ))
        ).scalar() or 0

        report.date_violations = count
        if count:
            report.issues.append(IntegrityIssue(
                severity=IssueSeverity.CRITICAL,
                category="dates",
                message=f"{count} resident(s) with move-in after move-out or in the future",
                count=count,
            ))
