"""Pydantic schemas for data validation.

These schemas define the create payloads for the organisation's
operational records and the enums shared with the backup catalog.
"""

from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ResidentStatus(str, Enum):
    """Tenancy status of a resident."""

    ACTIVE = "active"
    MOVED_OUT = "moved_out"
    PENDING = "pending"


class UserRole(str, Enum):
    """Role of a staff user."""

    STAFF = "STAFF"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"
    PLATFORM_ADMIN = "PLATFORM_ADMIN"


class BackupKind(str, Enum):
    """Kind of backup run."""

    FULL = "full"
    INCREMENTAL = "incremental"


class BackupStatus(str, Enum):
    """Lifecycle status of a backup run."""

    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


# ============================================================================
# Create Schemas
# ============================================================================


class UserCreate(BaseModel):
    """Schema for creating a staff user."""

    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field(..., min_length=1, max_length=200)
    role: UserRole = UserRole.STAFF

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Lower-case and strip email addresses."""
        return v.strip().lower() if isinstance(v, str) else v


class PropertyCreate(BaseModel):
    """Schema for creating a property."""

    name: str = Field(..., min_length=1, max_length=300)
    address: Optional[str] = None
    total_units: int = Field(default=0, ge=0)


class ResidentCreate(BaseModel):
    """Schema for creating a resident."""

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    property_id: Optional[str] = None
    status: ResidentStatus = ResidentStatus.ACTIVE
    move_in_date: Optional[date] = None
    move_out_date: Optional[date] = None


class IncidentCreate(BaseModel):
    """Schema for creating an incident report."""

    title: str = Field(..., min_length=1, max_length=300)
    severity: str = "low"
    resident_id: Optional[str] = None
    property_id: Optional[str] = None
    occurred_on: Optional[date] = None


class FinancialRecordCreate(BaseModel):
    """Schema for creating a financial record."""

    amount_pence: int
    category: str = "rent"
    resident_id: Optional[str] = None
    property_id: Optional[str] = None
    recorded_on: Optional[date] = None


class ActivityCreate(BaseModel):
    """Schema for creating an activity log entry."""

    action: str = Field(..., min_length=1, max_length=100)
    user_id: Optional[str] = None
    details: Optional[str] = None
