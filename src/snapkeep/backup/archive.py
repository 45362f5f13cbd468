"""Archive writer/reader used by the file exporter and file restore.

The production implementation shells out to ``tar``; tests substitute an
in-memory implementation through the same two protocols.
"""

import subprocess
import tempfile
from pathlib import Path
from typing import Protocol

from loguru import logger


class ArchiveWriter(Protocol):
    """Packs a directory tree into a single archive file."""

    def create(self, source_dir: Path, archive_path: Path) -> None:
        ...


class ArchiveReader(Protocol):
    """Unpacks an archive file into a directory."""

    def extract(self, archive_path: Path, dest_dir: Path) -> None:
        ...


class ArchiveCommandError(RuntimeError):
    """Raised when the archiving subprocess fails or times out."""

    pass


class TarArchiver:
    """gzip-compressed tar archives via the system ``tar`` binary."""

    def __init__(self, timeout: float = 300.0, tar_binary: str = "tar"):
        """Initialize archiver.

        Args:
            timeout: Seconds before a tar invocation is killed
            tar_binary: Name or path of the tar executable
        """
        self.timeout = timeout
        self.tar_binary = tar_binary

    def create(self, source_dir: Path, archive_path: Path) -> None:
        """Archive the contents of source_dir.

        A missing or empty source yields a valid, empty archive.
        """
        if source_dir.is_dir():
            self._run(["-czf", str(archive_path), "-C", str(source_dir), "."])
            return

        logger.info("Source {} does not exist, writing empty archive", source_dir)
        with tempfile.TemporaryDirectory() as empty:
            self._run(["-czf", str(archive_path), "-C", empty, "."])

    def extract(self, archive_path: Path, dest_dir: Path) -> None:
        """Extract archive_path into dest_dir, creating it if needed."""
        dest_dir.mkdir(parents=True, exist_ok=True)
        self._run(["-xzf", str(archive_path), "-C", str(dest_dir)])

    def _run(self, args: list[str]) -> None:
        cmd = [self.tar_binary, *args]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ArchiveCommandError(f"tar timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise ArchiveCommandError(f"tar binary not found: {self.tar_binary}") from e

        if result.returncode != 0:
            raise ArchiveCommandError(
                f"tar exited with {result.returncode}: {result.stderr.strip()}"
            )
