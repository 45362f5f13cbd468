"""Pytest configuration and shared fixtures.

This module provides fixtures for testing snapkeep: temporary databases,
a seeded operational store, uploads and env files, an archiver that needs
no tar binary, a controllable clock, and a recording notifier.
"""

import base64
import json
import os
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest

from snapkeep.backup.service import BackupService
from snapkeep.config import reset_config
from snapkeep.db.schemas import (
    IncidentCreate,
    PropertyCreate,
    ResidentCreate,
    ResidentStatus,
)
from snapkeep.db.sqlite import Database, reset_db


# ============================================================================
# Test doubles
# ============================================================================


class FixedClock:
    """Clock returning a settable UTC time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class JsonArchiver:
    """Archiver storing a tree as one JSON document of base64 file contents."""

    def __init__(self):
        self.created: list[Path] = []

    def create(self, source_dir: Path, archive_path: Path) -> None:
        files = {}
        if source_dir.is_dir():
            for path in sorted(source_dir.rglob("*")):
                if path.is_file():
                    rel = path.relative_to(source_dir).as_posix()
                    files[rel] = base64.b64encode(path.read_bytes()).decode("ascii")
        archive_path.write_text(json.dumps(files, sort_keys=True), encoding="utf-8")
        self.created.append(archive_path)

    def extract(self, archive_path: Path, dest_dir: Path) -> None:
        files = json.loads(archive_path.read_text(encoding="utf-8"))
        dest_dir.mkdir(parents=True, exist_ok=True)
        for rel, content in files.items():
            target = dest_dir / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(base64.b64decode(content))


class RecordingNotifier:
    """Notifier keeping every event it receives."""

    def __init__(self):
        self.events = []

    def notify(self, event) -> None:
        self.events.append(event)


# ============================================================================
# Environment
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path) -> Generator[None, None, None]:
    """Keep tests from reading or writing the developer's configuration."""
    for key in list(os.environ):
        if key.startswith("SNAPKEEP_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_config()
    reset_db()
    yield
    reset_config()
    reset_db()


@pytest.fixture
def clock() -> FixedClock:
    """Clock fixed at 2024-06-15 12:00 UTC."""
    return FixedClock(datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def archiver() -> JsonArchiver:
    """Archiver that needs no tar binary."""
    return JsonArchiver()


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Notifier recording events."""
    return RecordingNotifier()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db(tmp_path: Path) -> Database:
    """Create a test database instance."""
    database = Database(str(tmp_path / "data" / "test.db"))
    database.create_tables()
    return database


@pytest.fixture
def seeded_db(db: Database) -> Database:
    """Database holding one property, one active resident, and one incident."""
    prop = db.create_property(PropertyCreate(name="Elm House", total_units=4))
    resident = db.create_resident(ResidentCreate(
        first_name="Ada",
        last_name="Lovelace",
        property_id=prop.id,
        status=ResidentStatus.ACTIVE,
        move_in_date=date(2024, 1, 10),
    ))
    db.create_incident(IncidentCreate(
        title="Broken window",
        resident_id=resident.id,
        property_id=prop.id,
        occurred_on=date(2024, 2, 1),
    ))
    return db


# ============================================================================
# Filesystem Fixtures
# ============================================================================


@pytest.fixture
def uploads_dir(tmp_path: Path) -> Path:
    """Uploads tree with two files."""
    uploads = tmp_path / "uploads"
    (uploads / "docs").mkdir(parents=True)
    (uploads / "tenancy.txt").write_text("tenancy agreement", encoding="utf-8")
    (uploads / "docs" / "inspection.pdf").write_bytes(b"%PDF-1.4 inspection")
    return uploads


@pytest.fixture
def env_file(tmp_path: Path) -> Path:
    """Env file with one public key."""
    path = tmp_path / ".env"
    path.write_text("PORT=5000\n", encoding="utf-8")
    return path


@pytest.fixture
def backup_root(tmp_path: Path) -> Path:
    """Snapshot root directory."""
    root = tmp_path / "backups"
    root.mkdir()
    return root


@pytest.fixture
def service(
    seeded_db: Database,
    backup_root: Path,
    uploads_dir: Path,
    env_file: Path,
    archiver: JsonArchiver,
    notifier: RecordingNotifier,
    clock: FixedClock,
) -> BackupService:
    """Fully wired backup service over the seeded store."""
    return BackupService(
        db=seeded_db,
        backup_root=backup_root,
        uploads_dir=uploads_dir,
        env_file=env_file,
        archiver=archiver,
        notifier=notifier,
        clock=clock,
        environ={},
    )
