"""Database module for the operational store."""

from .models import (
    DOMAIN_MODELS,
    Activity,
    Base,
    FinancialRecord,
    Incident,
    Property,
    Resident,
    User,
)
from .schemas import BackupKind, BackupStatus, ResidentStatus
from .sqlite import Database, get_db

__all__ = [
    "DOMAIN_MODELS",
    "Activity",
    "Base",
    "FinancialRecord",
    "Incident",
    "Property",
    "Resident",
    "User",
    "BackupKind",
    "BackupStatus",
    "ResidentStatus",
    "Database",
    "get_db",
]
