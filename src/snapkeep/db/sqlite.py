"""SQLite database operations.

Handles database connection, session management, and the small set of
create helpers used to seed the operational store.
"""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

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
from .schemas import (
    ActivityCreate,
    FinancialRecordCreate,
    IncidentCreate,
    PropertyCreate,
    ResidentCreate,
    ResidentStatus,
    UserCreate,
)

# Seconds SQLite waits on a locked database before raising
BUSY_TIMEOUT = 30


class Database:
    """Database connection and operations manager."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. If None, uses
                     SNAPKEEP_DB_PATH env var or default location.
        """
        if db_path is None:
            db_path = os.environ.get("SNAPKEEP_DB_PATH", "./data/snapkeep.db")

        self.db_path = Path(db_path)
        self._is_memory = str(db_path) == ":memory:"

        if not self._is_memory:
            self._ensure_directory()

        # For in-memory databases, use StaticPool to reuse the same connection
        if self._is_memory:
            self.engine = create_engine(
                "sqlite:///:memory:",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                f"sqlite:///{self.db_path}",
                echo=False,
                connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT},
            )
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def create_tables(self) -> None:
        """Create all database tables."""
        # Import catalog model to register it with Base
        from ..backup.models import BackupRecordModel  # noqa: F401

        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        """Drop all database tables. Use with caution!"""
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session context manager."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def table_counts(self, session: Optional[Session] = None) -> dict[str, int]:
        """Row count for every domain table."""

        def _count(s: Session) -> dict[str, int]:
            return {
                model.__tablename__: s.execute(
                    select(func.count()).select_from(model)
                ).scalar() or 0
                for model in DOMAIN_MODELS
            }

        if session:
            return _count(session)
        else:
            with self.get_session() as s:
                return _count(s)

    # ========================================================================
    # Create helpers
    # ========================================================================

    def _add(self, obj, session: Optional[Session]):
        if session:
            session.add(obj)
            session.flush()
            return obj
        with self.get_session() as s:
            s.add(obj)
            s.flush()
            s.expunge(obj)
            return obj

    def create_user(self, user: UserCreate, session: Optional[Session] = None) -> User:
        """Create a staff user."""
        return self._add(
            User(email=user.email, name=user.name, role=user.role.value), session
        )

    def create_property(
        self, prop: PropertyCreate, session: Optional[Session] = None
    ) -> Property:
        """Create a property with an empty occupancy counter."""
        return self._add(
            Property(
                name=prop.name,
                address=prop.address,
                total_units=prop.total_units,
                occupied_units=0,
            ),
            session,
        )

    def create_resident(
        self, resident: ResidentCreate, session: Optional[Session] = None
    ) -> Resident:
        """Create a resident and keep the property's occupancy counter in step."""

        def _create(s: Session) -> Resident:
            db_resident = Resident(
                first_name=resident.first_name,
                last_name=resident.last_name,
                property_id=resident.property_id,
                status=resident.status.value,
                move_in_date=resident.move_in_date.isoformat() if resident.move_in_date else None,
                move_out_date=(
                    resident.move_out_date.isoformat() if resident.move_out_date else None
                ),
            )
            s.add(db_resident)

            if resident.property_id and resident.status == ResidentStatus.ACTIVE:
                prop = s.get(Property, resident.property_id)
                if prop:
                    prop.occupied_units = (prop.occupied_units or 0) + 1

            s.flush()
            return db_resident

        if session:
            return _create(session)
        else:
            with self.get_session() as s:
                db_resident = _create(s)
                s.expunge(db_resident)
                return db_resident

    def create_incident(
        self, incident: IncidentCreate, session: Optional[Session] = None
    ) -> Incident:
        """Create an incident report."""
        return self._add(
            Incident(
                title=incident.title,
                severity=incident.severity,
                resident_id=incident.resident_id,
                property_id=incident.property_id,
                occurred_on=incident.occurred_on.isoformat() if incident.occurred_on else None,
            ),
            session,
        )

    def create_financial_record(
        self, record: FinancialRecordCreate, session: Optional[Session] = None
    ) -> FinancialRecord:
        """Create a financial record."""
        return self._add(
            FinancialRecord(
                amount_pence=record.amount_pence,
                category=record.category,
                resident_id=record.resident_id,
                property_id=record.property_id,
                recorded_on=record.recorded_on.isoformat() if record.recorded_on else None,
            ),
            session,
        )

    def create_activity(
        self, activity: ActivityCreate, session: Optional[Session] = None
    ) -> Activity:
        """Create an activity log entry."""
        return self._add(
            Activity(action=activity.action, user_id=activity.user_id, details=activity.details),
            session,
        )


# Global database instance
_db: Optional[Database] = None


def get_db(db_path: Optional[str] = None) -> Database:
    """Get or create the global database instance."""
    global _db
    if _db is None:
        _db = Database(db_path)
        _db.create_tables()
    return _db


def reset_db() -> None:
    """Reset the global database instance. Used for testing."""
    global _db
    _db = None
