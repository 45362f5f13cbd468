"""Backup, restore and integrity verification."""

from .archive import ArchiveReader, ArchiveWriter, TarArchiver
from .catalog import BackupCatalog
from .exporters import (
    ConfigExporter,
    DatabaseExporter,
    FileArchiveExporter,
    ResourceExporter,
)
from .integrity import (
    IntegrityIssue,
    IntegrityReport,
    IntegrityVerifier,
    IssueSeverity,
)
from .notify import BackupEvent, CompositeNotifier, LogNotifier, WebhookNotifier
from .orchestrator import BackupOrchestrator
from .restore import RestoreCoordinator, RestoreMode
from .retention import RetentionManager
from .schemas import (
    BackupManifest,
    BackupRecord,
    IntegrityResult,
    RestoreReport,
    RetentionPolicy,
)
from .service import BackupService

__all__ = [
    "ArchiveReader",
    "ArchiveWriter",
    "TarArchiver",
    "BackupCatalog",
    "ConfigExporter",
    "DatabaseExporter",
    "FileArchiveExporter",
    "ResourceExporter",
    "IntegrityIssue",
    "IntegrityReport",
    "IntegrityVerifier",
    "IssueSeverity",
    "BackupEvent",
    "CompositeNotifier",
    "LogNotifier",
    "WebhookNotifier",
    "BackupOrchestrator",
    "RestoreCoordinator",
    "RestoreMode",
    "RetentionManager",
    "BackupManifest",
    "BackupRecord",
    "IntegrityResult",
    "RestoreReport",
    "RetentionPolicy",
    "BackupService",
]
