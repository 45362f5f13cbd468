"""Tests for the operational store."""

from datetime import date
from uuid import UUID

import pytest

from snapkeep.db.models import Property, Resident
from snapkeep.db.schemas import (
    ActivityCreate,
    FinancialRecordCreate,
    PropertyCreate,
    ResidentCreate,
    ResidentStatus,
    UserCreate,
)
from snapkeep.db.sqlite import Database, get_db, reset_db


class TestDatabaseCreation:
    """Tests for database initialization."""

    def test_database_path_created(self, db: Database):
        """Test that database file is created."""
        assert db.db_path.exists()

    def test_in_memory_database(self):
        """Test that an in-memory database keeps data across sessions."""
        memory = Database(":memory:")
        memory.create_tables()
        memory.create_property(PropertyCreate(name="Oak Court"))

        assert memory.table_counts()["properties"] == 1

    def test_get_db_is_cached(self, tmp_path):
        """Test that get_db returns the same instance until reset."""
        first = get_db(str(tmp_path / "global.db"))
        assert get_db() is first
        reset_db()
        assert get_db(str(tmp_path / "other.db")) is not first


class TestCreateHelpers:
    """Tests for the create helpers."""

    def test_create_user_normalizes_email(self, db: Database):
        """Test that emails are lower-cased."""
        user = db.create_user(UserCreate(email="  Staff@Example.ORG ", name="Sam"))

        assert user.email == "staff@example.org"
        assert UUID(user.id)

    def test_active_resident_increments_occupancy(self, db: Database):
        """Test that an active resident bumps occupied_units."""
        prop = db.create_property(PropertyCreate(name="Elm House", total_units=3))
        db.create_resident(ResidentCreate(
            first_name="Ada", last_name="Byron", property_id=prop.id,
        ))
        db.create_resident(ResidentCreate(
            first_name="Bo", last_name="Peep", property_id=prop.id,
            status=ResidentStatus.PENDING,
        ))

        with db.get_session() as session:
            assert session.get(Property, prop.id).occupied_units == 1

    def test_resident_dates_stored_as_iso(self, db: Database):
        """Test that dates round-trip as ISO strings."""
        resident = db.create_resident(ResidentCreate(
            first_name="Ada",
            last_name="Byron",
            move_in_date=date(2024, 3, 1),
            move_out_date=date(2024, 9, 30),
            status=ResidentStatus.MOVED_OUT,
        ))

        with db.get_session() as session:
            stored = session.get(Resident, resident.id)
            assert stored.move_in_date == "2024-03-01"
            assert stored.move_out_date == "2024-09-30"

    def test_table_counts_cover_every_domain_table(self, seeded_db: Database):
        """Test row counts per domain table."""
        seeded_db.create_financial_record(FinancialRecordCreate(amount_pence=45000))
        seeded_db.create_activity(ActivityCreate(action="login"))

        counts = seeded_db.table_counts()

        assert counts == {
            "users": 0,
            "properties": 1,
            "residents": 1,
            "incidents": 1,
            "financial_records": 1,
            "activities": 1,
        }

    def test_session_rolls_back_on_error(self, db: Database):
        """Test that a failing session leaves no partial writes."""
        with pytest.raises(RuntimeError):
            with db.get_session() as session:
                db.create_property(PropertyCreate(name="Temp"), session=session)
                raise RuntimeError("boom")

        assert db.table_counts()["properties"] == 0
