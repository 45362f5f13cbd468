"""Backup notifications.

The orchestrator only calls ``notify(event)``; delivery is up to the
notifier. Delivery failures are logged and never change a run's outcome.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import requests
from loguru import logger

from ..db.schemas import BackupStatus
from .schemas import BackupRecord


@dataclass
class BackupEvent:
    """Terminal state of one backup run."""

    backup_id: str
    kind: str
    status: str
    timestamp: str
    size_bytes: Optional[int] = None
    duration_ms: Optional[int] = None
    integrity_verified: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        """True for successful runs."""
        return self.status == BackupStatus.SUCCESS.value

    @classmethod
    def from_record(cls, record: BackupRecord) -> "BackupEvent":
        """Create from a terminal BackupRecord."""
        return cls(
            backup_id=record.id,
            kind=record.kind.value,
            status=record.status.value,
            timestamp=record.timestamp.isoformat(),
            size_bytes=record.size_bytes,
            duration_ms=record.duration_ms,
            integrity_verified=record.integrity.verified,
            error=record.error,
        )

    def summary(self) -> str:
        """One-line human summary."""
        if self.success:
            verified = "verified" if self.integrity_verified else "UNVERIFIED"
            return (
                f"Backup {self.backup_id} succeeded "
                f"({self.size_bytes or 0} bytes, {self.duration_ms or 0} ms, {verified})"
            )
        return f"Backup {self.backup_id} failed: {self.error}"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "backup_id": self.backup_id,
            "kind": self.kind,
            "status": self.status,
            "timestamp": self.timestamp,
            "size_bytes": self.size_bytes,
            "duration_ms": self.duration_ms,
            "integrity_verified": self.integrity_verified,
            "error": self.error,
            "summary": self.summary(),
        }


class Notifier(Protocol):
    """Delivers backup events somewhere a human will see them."""

    def notify(self, event: BackupEvent) -> None:
        ...


class LogNotifier:
    """Writes events to the application log."""

    def notify(self, event: BackupEvent) -> None:
        if event.success:
            logger.info(event.summary())
        else:
            logger.error(event.summary())


class WebhookNotifier:
    """POSTs events as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: int = 10, session: Optional[requests.Session] = None):
        """Initialize notifier.

        Args:
            url: Webhook endpoint
            timeout: Request timeout in seconds
            session: requests session to use, a new one if None
        """
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "snapkeep-notifier/1.0"})

    def notify(self, event: BackupEvent) -> None:
        try:
            response = self._session.post(self.url, json=event.to_dict(), timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout:
            logger.warning("Webhook {} timed out for {}", self.url, event.backup_id)
        except requests.exceptions.RequestException as e:
            logger.warning("Webhook delivery failed for {}: {}", event.backup_id, e)


class CompositeNotifier:
    """Fans an event out to several notifiers, gated by outcome."""

    def __init__(
        self,
        notifiers: Sequence[Notifier],
        on_success: bool = True,
        on_failure: bool = True,
    ):
        self.notifiers = list(notifiers)
        self.on_success = on_success
        self.on_failure = on_failure

    def notify(self, event: BackupEvent) -> None:
        if event.success and not self.on_success:
            return
        if not event.success and not self.on_failure:
            return

        for notifier in self.notifiers:
            try:
                notifier.notify(event)
            except Exception as e:
                logger.warning(
                    "{} failed for {}: {}", type(notifier).__name__, event.backup_id, e
                )
