"""SQLAlchemy ORM models for the operational store.

Tables:
- users: Staff accounts
- properties: Housing properties with a denormalised occupancy counter
- residents: Residents placed at a property
- incidents: Incident reports against a resident and/or property
- financial_records: Charges and payments against a resident and/or property
- activities: Audit trail of staff actions

Foreign keys are declared but SQLite does not enforce them by default,
so dangling references can exist and are reported by the integrity sweep.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .schemas import ResidentStatus, UserRole


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def generate_uuid() -> str:
    """Generate a UUID string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Current UTC time as an ISO string."""
    return datetime.now(timezone.utc).isoformat()


class User(Base):
    """Staff user account."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.STAFF.value)
    created_at: Mapped[str] = mapped_column(String(32), default=utc_now_iso)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"


class Property(Base):
    """Housing property.

    ``occupied_units`` is a denormalised count of active residents and is
    repaired by the integrity sweep when it drifts.
    """

    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(300), nullable=False, index=True)
    address: Mapped[Optional[str]] = mapped_column(Text)
    total_units: Mapped[int] = mapped_column(Integer, default=0)
    occupied_units: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[str] = mapped_column(String(32), default=utc_now_iso)

    def __repr__(self) -> str:
        return f"<Property(id={self.id}, name='{self.name}')>"


class Resident(Base):
    """Resident placed at a property."""

    __tablename__ = "residents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    property_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("properties.id"), index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=ResidentStatus.ACTIVE.value, index=True
    )
    move_in_date: Mapped[Optional[str]] = mapped_column(String(10))  # ISO date
    move_out_date: Mapped[Optional[str]] = mapped_column(String(10))
    created_at: Mapped[str] = mapped_column(String(32), default=utc_now_iso)

    def __repr__(self) -> str:
        return f"<Resident(id={self.id}, status='{self.status}')>"


class Incident(Base):
    """Incident report."""

    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), default="low")
    resident_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("residents.id"), index=True
    )
    property_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("properties.id"), index=True
    )
    occurred_on: Mapped[Optional[str]] = mapped_column(String(10))
    created_at: Mapped[str] = mapped_column(String(32), default=utc_now_iso)


class FinancialRecord(Base):
    """Charge or payment, in minor currency units."""

    __tablename__ = "financial_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    amount_pence: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(50), default="rent")
    resident_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("residents.id"), index=True
    )
    property_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("properties.id"), index=True
    )
    recorded_on: Mapped[Optional[str]] = mapped_column(String(10))
    created_at: Mapped[str] = mapped_column(String(32), default=utc_now_iso)


class Activity(Base):
    """Audit trail entry."""

    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id"), index=True
    )
    details: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[str] = mapped_column(String(32), default=utc_now_iso)


# Parents before children; restore inserts in this order and clears in reverse.
DOMAIN_MODELS = [User, Property, Resident, Incident, FinancialRecord, Activity]
