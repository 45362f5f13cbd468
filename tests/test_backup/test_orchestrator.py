"""Tests for backup orchestration."""

import json
import shutil
from pathlib import Path

import pytest

from snapkeep.backup.orchestrator import CANCELLED_ERROR, SEAL_FAILED_ERROR
from snapkeep.backup.retention import INTERRUPTED_ERROR
from snapkeep.backup.schemas import BackupManifest, IntegrityResult
from snapkeep.backup.service import BackupService
from snapkeep.db.schemas import BackupKind, BackupStatus
from snapkeep.errors import BackupInProgress, SubsystemDraining


class TestCreateBackup:
    """Tests for a normal backup run."""

    def test_full_backup_scenario(self, service: BackupService, notifier):
        """Test 3 records, 2 files, 1 config key -> sealed success with 3 artifacts."""
        record = service.create_backup(BackupKind.FULL)

        assert record.status == BackupStatus.SUCCESS
        assert record.artifacts == {
            "database": "database.json",
            "files": "uploads.tar.gz",
            "config": "config.json",
        }
        assert record.integrity.verified is True
        assert record.error is None
        assert record.size_bytes > 0
        assert record.duration_ms >= 0

        assert [e.backup_id for e in notifier.events] == [record.id]
        assert notifier.events[0].success

    def test_record_persisted(self, service: BackupService):
        """Test that the catalog holds the terminal record."""
        record = service.create_backup()

        stored = service.get_backup(record.id)

        assert stored.status == BackupStatus.SUCCESS
        assert stored.integrity.checksum == record.integrity.checksum
        assert stored.size_bytes == record.size_bytes

    def test_id_embeds_kind(self, service: BackupService, clock):
        """Test the backup id format."""
        record = service.create_backup(BackupKind.INCREMENTAL)

        expected_ms = int(clock.now.timestamp() * 1000)
        assert record.id == f"backup_{expected_ms}_incremental"
        assert record.kind == BackupKind.INCREMENTAL

    def test_ids_unique_under_same_clock(self, service: BackupService):
        """Test that two runs in the same millisecond get distinct ids."""
        first = service.create_backup()
        second = service.create_backup()

        assert first.id != second.id
        assert int(second.id.split("_")[1]) > int(first.id.split("_")[1])
        assert [r.id for r in service.list_backups()] == [second.id, first.id]

    def test_manifest_written(self, service: BackupService, backup_root: Path):
        """Test manifest contents."""
        record = service.create_backup()

        manifest = BackupManifest.load(backup_root / record.id)

        assert manifest.manifest_version == 1
        assert manifest.id == record.id
        assert manifest.artifacts == record.artifacts
        assert manifest.checksum == record.integrity.checksum
        assert manifest.tables["properties"] == 1
        assert manifest.tables["incidents"] == 1
        assert set(manifest.digests) == {
            "database.json", "uploads.tar.gz", "config.json", "manifest.json",
        }
        assert manifest.metadata.execution_mode == "development"
        assert manifest.metadata.runtime_version.startswith("python")

    def test_snapshot_layout(self, service: BackupService, backup_root: Path):
        """Test the fixed artifact filenames on disk."""
        record = service.create_backup()

        names = sorted(p.name for p in (backup_root / record.id).iterdir())

        assert names == ["config.json", "database.json", "manifest.json", "uploads.tar.gz"]

    def test_config_artifact_has_key(self, service: BackupService, backup_root: Path):
        """Test that the config key is captured."""
        record = service.create_backup()

        data = json.loads((backup_root / record.id / "config.json").read_text())

        assert data["values"] == {"PORT": "5000"}


class TestEmptyResources:
    """Tests for missing resources."""

    def test_missing_uploads_directory(self, service: BackupService, uploads_dir: Path, backup_root: Path):
        """Test that a missing uploads dir still gives a sealed success."""
        shutil.rmtree(uploads_dir)

        record = service.create_backup()

        assert record.status == BackupStatus.SUCCESS
        assert record.integrity.verified is True
        archive = backup_root / record.id / "uploads.tar.gz"
        assert json.loads(archive.read_text()) == {}


class TestFailures:
    """Tests for failed runs."""

    def test_exporter_failure_recorded(self, service: BackupService, backup_root: Path, notifier):
        """Test that an ExportError fails the run without raising."""

        class BrokenArchiver:
            def create(self, source_dir, archive_path):
                raise OSError("disk full")

        service.orchestrator.exporters[1].archiver = BrokenArchiver()

        record = service.create_backup()

        assert record.status == BackupStatus.FAILED
        assert record.error.startswith("files:")
        assert "disk full" in record.error
        assert record.integrity.verified is False
        assert (backup_root / record.id / "database.json").exists()
        assert service.get_backup(record.id).status == BackupStatus.FAILED
        assert notifier.events[-1].success is False

    def test_notifier_failure_does_not_change_outcome(self, service: BackupService):
        """Test that a broken notifier is ignored."""

        class BrokenNotifier:
            def notify(self, event):
                raise RuntimeError("smtp down")

        service.orchestrator.notifier = BrokenNotifier()

        assert service.create_backup().status == BackupStatus.SUCCESS


class TestSealingPolicy:
    """Tests for the unverifiable-snapshot policy."""

    @pytest.fixture
    def unsealable(self, service: BackupService, monkeypatch) -> BackupService:
        monkeypatch.setattr(
            service.verifier, "seal", lambda snapshot_dir: IntegrityResult(verified=False)
        )
        return service

    def test_lenient_by_default(self, unsealable: BackupService, backup_root: Path):
        """Test that an unsealed run is a success flagged unverified."""
        record = unsealable.create_backup()

        assert record.status == BackupStatus.SUCCESS
        assert record.integrity.verified is False
        assert BackupManifest.load(backup_root / record.id).checksum is None

    def test_strict_fails_run(self, unsealable: BackupService):
        """Test that strict mode records the run as failed."""
        unsealable.orchestrator.strict_integrity = True

        record = unsealable.create_backup()

        assert record.status == BackupStatus.FAILED
        assert record.error == SEAL_FAILED_ERROR
        assert record.integrity.verified is False


class TestConcurrency:
    """Tests for the single-flight lock and drain mode."""

    def test_second_run_fails_fast(self, service: BackupService):
        """Test that a run started during another raises BackupInProgress."""
        seen = []

        class ReentrantArchiver:
            def create(self, source_dir, archive_path):
                try:
                    service.create_backup()
                except BackupInProgress as e:
                    seen.append(e)
                archive_path.write_text("{}")

        service.orchestrator.exporters[1].archiver = ReentrantArchiver()

        record = service.create_backup()

        assert record.status == BackupStatus.SUCCESS
        assert len(seen) == 1
        assert seen[0].active_id == record.id
        assert len(service.list_backups()) == 1

    def test_draining_refuses_new_runs(self, service: BackupService):
        """Test that no run starts once draining."""
        assert service.drain(timeout=1) is True

        with pytest.raises(SubsystemDraining):
            service.create_backup()
        assert service.list_backups() == []

    def test_drain_mid_run_finishes_current_artifact(self, service: BackupService, backup_root: Path):
        """Test that draining stops after the artifact being written."""
        orchestrator = service.orchestrator

        class DrainingArchiver:
            def create(self, source_dir, archive_path):
                orchestrator.begin_drain()
                archive_path.write_text("{}")

        orchestrator.exporters[1].archiver = DrainingArchiver()

        record = service.create_backup()

        assert record.status == BackupStatus.FAILED
        assert record.error == CANCELLED_ERROR
        assert set(record.artifacts) == {"database", "files"}
        assert (backup_root / record.id / "uploads.tar.gz").exists()
        assert not (backup_root / record.id / "config.json").exists()
        assert orchestrator.wait_idle(timeout=1) is True


class TestCrossProcess:
    """Tests for a second service sharing the store and snapshot root."""

    @pytest.fixture
    def other(self, seeded_db, backup_root, uploads_dir, env_file, archiver, clock) -> BackupService:
        return BackupService(
            db=seeded_db,
            backup_root=backup_root,
            uploads_dir=uploads_dir,
            env_file=env_file,
            archiver=archiver,
            clock=clock,
            environ={},
        )

    def _during_run(self, service: BackupService, action) -> list:
        results = []
        inner = service.archiver

        class HookArchiver:
            def create(self, source_dir, archive_path):
                results.append(action())
                inner.create(source_dir, archive_path)

        service.orchestrator.exporters[1].archiver = HookArchiver()
        return results

    def test_reconcile_leaves_live_run_alone(self, service: BackupService, other: BackupService):
        """Test that another process's reconcile does not interrupt a young run."""
        results = self._during_run(service, other.reconcile)

        record = service.create_backup()

        assert results[0]["interrupted"] == 0
        assert results[0]["directories_removed"] == 0
        assert record.status == BackupStatus.SUCCESS
        assert service.catalog.get(record.id).status == BackupStatus.SUCCESS

    def test_run_finalized_elsewhere_keeps_stored_outcome(
        self, service: BackupService, other: BackupService
    ):
        """Test that a run whose row was marked interrupted does not raise."""
        results = self._during_run(service, other.retention.reconcile)

        record = service.create_backup()

        assert results[0]["interrupted"] == 1
        assert record.status == BackupStatus.FAILED
        assert record.error == INTERRUPTED_ERROR
        assert service.catalog.get(record.id).error == INTERRUPTED_ERROR
