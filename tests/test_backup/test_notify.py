"""Tests for backup notifications."""

from datetime import datetime, timezone

import requests

from snapkeep.backup.notify import (
    BackupEvent,
    CompositeNotifier,
    LogNotifier,
    WebhookNotifier,
)
from snapkeep.backup.schemas import BackupRecord, IntegrityResult
from snapkeep.db.schemas import BackupStatus


def make_event(status: BackupStatus = BackupStatus.SUCCESS) -> BackupEvent:
    record = BackupRecord(
        id="backup_1_full",
        timestamp=datetime(2024, 6, 1, tzinfo=timezone.utc),
        status=status,
        size_bytes=4096,
        duration_ms=12,
        integrity=IntegrityResult(verified=True, checksum="ff" * 32),
        error="database: locked" if status == BackupStatus.FAILED else None,
    )
    return BackupEvent.from_record(record)


class FakeSession:
    """Stands in for requests.Session."""

    def __init__(self, status_code: int = 200, exc: Exception = None):
        self.headers = {}
        self.status_code = status_code
        self.exc = exc
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self.exc:
            raise self.exc
        response = requests.Response()
        response.status_code = self.status_code
        response.url = url
        return response


class TestBackupEvent:
    """Tests for BackupEvent."""

    def test_from_record(self):
        """Test event fields copied from a record."""
        event = make_event()

        assert event.success
        assert event.status == "success"
        assert event.integrity_verified is True
        assert "succeeded" in event.summary()

    def test_failure_summary(self):
        """Test failure summary includes the error."""
        event = make_event(BackupStatus.FAILED)

        assert not event.success
        assert event.summary() == "Backup backup_1_full failed: database: locked"
        assert event.to_dict()["error"] == "database: locked"


class TestWebhookNotifier:
    """Tests for WebhookNotifier."""

    def test_posts_json(self):
        """Test that the event is POSTed as JSON."""
        session = FakeSession()
        WebhookNotifier("https://hooks.example.org/x", timeout=3, session=session).notify(make_event())

        url, body, timeout = session.posts[0]
        assert url == "https://hooks.example.org/x"
        assert body["backup_id"] == "backup_1_full"
        assert timeout == 3

    def test_http_error_is_swallowed(self):
        """Test that a 500 from the webhook does not raise."""
        session = FakeSession(status_code=500)

        WebhookNotifier("https://hooks.example.org/x", session=session).notify(make_event())

        assert len(session.posts) == 1

    def test_connection_error_is_swallowed(self):
        """Test that an unreachable webhook does not raise."""
        session = FakeSession(exc=requests.exceptions.ConnectionError("refused"))

        WebhookNotifier("https://hooks.example.org/x", session=session).notify(make_event())


class Recorder:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


class Exploder:
    def notify(self, event):
        raise RuntimeError("boom")


class TestCompositeNotifier:
    """Tests for CompositeNotifier."""

    def test_fans_out_past_failures(self):
        """Test that one failing notifier does not block the others."""
        recorder = Recorder()
        CompositeNotifier([Exploder(), LogNotifier(), recorder]).notify(make_event())

        assert len(recorder.events) == 1

    def test_gating_by_outcome(self):
        """Test on_success / on_failure flags."""
        recorder = Recorder()
        composite = CompositeNotifier([recorder], on_success=False, on_failure=True)

        composite.notify(make_event(BackupStatus.SUCCESS))
        composite.notify(make_event(BackupStatus.FAILED))

        assert [e.status for e in recorder.events] == ["failed"]
