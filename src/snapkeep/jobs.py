"""Entry points for the external scheduler.

The host's scheduler owns the timers; these functions run one tick each and
never raise, so a failed tick cannot take the scheduler down.
"""

from typing import Optional

from loguru import logger

from .backup.integrity import IntegrityReport
from .backup.schemas import BackupRecord
from .backup.service import BackupService
from .db.schemas import BackupKind, BackupStatus
from .errors import SnapkeepError

# Suggested intervals, in seconds
BACKUP_INTERVAL = 6 * 60 * 60
INTEGRITY_INTERVAL = 2 * 60 * 60


def run_backup_job(
    service: BackupService, kind: BackupKind = BackupKind.FULL
) -> Optional[BackupRecord]:
    """Create a backup, then apply retention if it succeeded.

    Returns:
        The backup record, or None if no run took place
    """
    logger.info("Scheduled {} backup starting", BackupKind(kind).value)
    try:
        record = service.create_backup(kind)
    except SnapkeepError as e:
        logger.warning("Scheduled backup skipped: {}", e)
        return None
    except Exception:
        logger.exception("Scheduled backup crashed")
        return None

    if record.status != BackupStatus.SUCCESS:
        logger.error("Scheduled backup {} failed: {}", record.id, record.error)
        return record

    try:
        deleted = service.cleanup()
        logger.info("Retention removed {} old backup(s)", deleted)
    except Exception:
        logger.exception("Retention cleanup crashed")

    return record


def run_integrity_job(service: BackupService) -> Optional[IntegrityReport]:
    """Sweep the live store and raise an alert in the log on critical issues.

    Returns:
        The report, or None if the sweep itself failed
    """
    try:
        report = service.run_integrity_check()
    except Exception:
        logger.exception("Integrity sweep crashed")
        return None

    if report.has_critical_issues:
        logger.warning("Data integrity issues detected, operator attention needed")
        for issue in report.issues:
            logger.warning(str(issue))
    return report
