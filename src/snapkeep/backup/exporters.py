"""Resource exporters.

Each exporter captures one resource class into a single artifact file inside
a snapshot directory and touches nothing outside it. Any failure surfaces as
``ExportError`` so the orchestrator can record it against the run.
"""

import json
import os
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from dotenv import dotenv_values
from loguru import logger
from sqlalchemy import inspect, select

from ..db.models import DOMAIN_MODELS
from ..db.sqlite import Database
from ..errors import ExportError
from .archive import ArchiveWriter
from .schemas import ArtifactKind

DATABASE_FILENAME = "database.json"
UPLOADS_FILENAME = "uploads.tar.gz"
CONFIG_FILENAME = "config.json"

DATABASE_FORMAT = "snapkeep-logical-v1"
CONFIG_FORMAT = "snapkeep-config-v1"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResourceExporter(ABC):
    """Captures one resource class into one artifact."""

    artifact: ArtifactKind
    filename: str

    def export(self, target_dir: Path) -> str:
        """Write the artifact into target_dir.

        Args:
            target_dir: Snapshot directory owned by the current run

        Returns:
            Artifact filename relative to target_dir

        Raises:
            ExportError: If the resource could not be captured
        """
        path = target_dir / self.filename
        try:
            self._write(path)
        except ExportError:
            raise
        except Exception as e:
            raise ExportError(self.artifact.value, e) from e

        logger.info(
            "Exported {} -> {} ({} bytes)", self.artifact.value, self.filename, path.stat().st_size
        )
        return self.filename

    @abstractmethod
    def _write(self, path: Path) -> None:
        """Produce the artifact at path."""


class DatabaseExporter(ResourceExporter):
    """Logical export of every domain table, parents first."""

    artifact = ArtifactKind.DATABASE
    filename = DATABASE_FILENAME

    def __init__(
        self,
        db: Database,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize exporter.

        Args:
            db: Structured store to read
            timeout: Seconds allowed for the whole export, None for no limit
            clock: Source of the export timestamp
        """
        self.db = db
        self.timeout = timeout
        self.clock = clock
        self.last_table_counts: dict[str, int] = {}

    def _write(self, path: Path) -> None:
        started = time.monotonic()
        rows: dict[str, list[dict]] = {}

        with self.db.get_session() as session:
            for model in DOMAIN_MODELS:
                if self.timeout is not None and time.monotonic() - started > self.timeout:
                    raise ExportError(
                        self.artifact.value, f"timed out after {self.timeout}s"
                    )
                columns = [attr.key for attr in inspect(model).column_attrs]
                records = session.execute(select(model)).scalars().all()
                rows[model.__tablename__] = [
                    {key: getattr(record, key) for key in columns} for record in records
                ]

        tables = {name: len(table_rows) for name, table_rows in rows.items()}
        data = {
            "format": DATABASE_FORMAT,
            "exported_at": self.clock().isoformat(),
            "tables": tables,
            "total_records": sum(tables.values()),
            "rows": rows,
        }
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        self.last_table_counts = tables


class FileArchiveExporter(ResourceExporter):
    """Compresses the uploads directory into one archive."""

    artifact = ArtifactKind.FILES
    filename = UPLOADS_FILENAME

    def __init__(self, uploads_dir: Path, archiver: ArchiveWriter):
        """Initialize exporter.

        Args:
            uploads_dir: Directory tree to capture; may not exist
            archiver: Archive implementation
        """
        self.uploads_dir = uploads_dir
        self.archiver = archiver

    def _write(self, path: Path) -> None:
        self.archiver.create(self.uploads_dir, path)


# Key names that mark a value as secret
SECRET_KEY_PATTERN = re.compile(
    r"SECRET|PASS|PWD|TOKEN|CREDENTIAL|PRIVATE|AUTH|KEY|SALT|DATABASE_URL|_DSN$",
    re.IGNORECASE,
)
# Key names matching SECRET_KEY_PATTERN that are nonetheless public
PUBLIC_KEY_SUFFIXES = ("PUBLISHABLE_KEY", "PUBLIC_KEY")
PEM_PATTERN = re.compile(r"-----BEGIN [A-Z ]+-----")
URL_WITH_PASSWORD_PATTERN = re.compile(r"^[a-z][a-z0-9+.\-]*://[^/\s:@]+:[^/\s@]+@", re.IGNORECASE)


def is_secret(key: str, value: str) -> bool:
    """True if a configuration entry must not leave the process."""
    upper = key.upper()
    if SECRET_KEY_PATTERN.search(upper) and not upper.endswith(PUBLIC_KEY_SUFFIXES):
        return True
    if PEM_PATTERN.search(value):
        return True
    return bool(URL_WITH_PASSWORD_PATTERN.match(value.strip()))


class ConfigExporter(ResourceExporter):
    """Sanitised dump of allow-listed configuration keys.

    Only the named keys are captured. Each is read from the process
    environment, falling back to the env file; a captured key whose name or
    value still looks like a credential is redacted.
    """

    artifact = ArtifactKind.CONFIG
    filename = CONFIG_FILENAME

    def __init__(
        self,
        env_file: Optional[Path],
        keys: Sequence[str] = (),
        environ: Optional[Mapping[str, str]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize exporter.

        Args:
            env_file: dotenv file to read; may not exist
            keys: Allow-listed configuration keys
            environ: Process environment, defaults to os.environ
            clock: Source of the export timestamp
        """
        self.env_file = env_file
        self.keys = list(keys)
        self.environ = environ if environ is not None else os.environ
        self.clock = clock

    def collect(self) -> tuple[dict[str, str], list[str]]:
        """Gather configuration.

        Returns:
            Tuple of (safe values, names of redacted keys)
        """
        file_values: dict[str, Optional[str]] = {}
        if self.env_file is not None and self.env_file.exists():
            file_values = dotenv_values(self.env_file)

        raw: dict[str, str] = {}
        for key in self.keys:
            if key in self.environ:
                raw[key] = self.environ[key]
            elif file_values.get(key) is not None:
                raw[key] = file_values[key]

        values: dict[str, str] = {}
        redacted: list[str] = []
        for key in sorted(raw):
            if is_secret(key, raw[key]):
                redacted.append(key)
            else:
                values[key] = raw[key]
        return values, redacted

    def _write(self, path: Path) -> None:
        values, redacted = self.collect()
        if redacted:
            logger.info("Redacted {} secret config key(s)", len(redacted))

        data = {
            "format": CONFIG_FORMAT,
            "exported_at": self.clock().isoformat(),
            "values": values,
            "redacted": redacted,
        }
        path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
