"""
Unit Tests for Cross-Region Replication and Reconciliation
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from boto3.exceptions import S3UploadFailedError

from drvault.backup.backup_manager import BackupManager
from drvault.backup.collaborators import SQLiteDatabase
from drvault.backup.replication import ReplicationManager, artifact_id_from_key
from drvault.backup.storage_backends import S3Backend
from drvault.exceptions import BackupError, IntegrityError, InvalidTransition, TransientIOError
from drvault.models import ArtifactStatus, SyncStatus


async def never_finishes(*args, **kwargs):
    await asyncio.sleep(30)


def without_identity(report) -> dict:
    data = report.to_dict()
    data.pop("cycle_id")
    data.pop("created_at")
    return data


def test_artifact_id_from_key():
    assert artifact_id_from_key("artifacts/full/full-20260101T020000Z-a1b2c3.sql.gz") == \
        "full-20260101T020000Z-a1b2c3"


class TestReplication:
    """Test copying verified artifacts to secondary regions."""

    @pytest.fixture(autouse=True)
    def setup_managers(self, make_settings, catalog, primary, secondaries):
        self.settings = make_settings(operation_timeout_seconds=0.5)
        self.catalog = catalog
        self.primary = primary
        self.secondaries = secondaries
        database = SQLiteDatabase(self.settings.database_path, self.settings.sandbox_path)
        self.manager = BackupManager(self.settings, catalog, primary, database)
        self.replication = ReplicationManager(self.settings, catalog, primary, secondaries)

    async def produce_verified(self):
        artifact = await self.manager.backup_full()
        await self.manager.verify_artifact(artifact)
        return self.catalog.get(artifact.artifact_id)

    async def test_replicates_to_every_region(self):
        artifact = await self.produce_verified()

        outcome = await self.replication.replicate(artifact)

        assert outcome.replicated
        assert outcome.succeeded == ["region-a", "region-b"]
        stored = self.catalog.get(artifact.artifact_id)
        assert stored.status == ArtifactStatus.REPLICATED
        assert stored.region_ids == {"region-a", "region-b"}
        for backend in self.secondaries:
            info = await backend.stat(artifact.storage_key)
            assert info.size_bytes == artifact.size_bytes
            assert info.metadata["source-region"] == "primary"

    async def test_slow_region_gives_partial_replication(self):
        artifact = await self.produce_verified()

        with patch.object(self.secondaries[1], "put", never_finishes):
            outcome = await self.replication.replicate(artifact)

        assert outcome.partial
        assert outcome.succeeded == ["region-a"]
        assert "timed out" in outcome.failed["region-b"]
        stored = self.catalog.get(artifact.artifact_id)
        assert stored.status == ArtifactStatus.REPLICATED
        assert stored.region_ids == {"region-a"}

    async def test_every_region_failing_keeps_verified(self):
        artifact = await self.produce_verified()
        failing = AsyncMock(side_effect=TransientIOError("unreachable"))

        with patch.object(self.secondaries[0], "put", failing), \
                patch.object(self.secondaries[1], "put", failing):
            outcome = await self.replication.replicate(artifact)

        assert not outcome.replicated
        assert sorted(outcome.failed) == ["region-a", "region-b"]
        assert failing.await_count == 4
        assert self.catalog.get(artifact.artifact_id).status == ArtifactStatus.VERIFIED

    async def test_retry_succeeds_on_second_attempt(self):
        artifact = await self.produce_verified()
        real_put = self.secondaries[1].put
        flaky = AsyncMock(side_effect=[TransientIOError("reset"), None])

        async def put_once_failing(*args, **kwargs):
            await flaky()
            return await real_put(*args, **kwargs)

        with patch.object(self.secondaries[1], "put", put_once_failing):
            outcome = await self.replication.replicate(artifact)

        assert outcome.failed == {}
        assert outcome.succeeded == ["region-a", "region-b"]

    async def test_rejected_s3_upload_does_not_block_other_regions(self):
        artifact = await self.produce_verified()
        client = MagicMock()
        client.upload_file.side_effect = S3UploadFailedError(
            "Failed to upload: An error occurred (AccessDenied) when calling the PutObject operation"
        )
        s3_region = S3Backend("region-s3", {"bucket_name": "dr-bucket", "client": client})
        replication = ReplicationManager(
            self.settings, self.catalog, self.primary, [self.secondaries[0], s3_region]
        )

        outcome = await replication.replicate(artifact)

        assert outcome.succeeded == ["region-a"]
        assert "AccessDenied" in outcome.failed["region-s3"]
        assert client.upload_file.call_count == 2
        stored = self.catalog.get(artifact.artifact_id)
        assert stored.status == ArtifactStatus.REPLICATED
        assert stored.region_ids == {"region-a"}

    async def test_corrupt_artifact_is_never_replicated(self):
        artifact = await self.manager.backup_full()
        stored = self.primary.base_path / artifact.storage_key
        stored.write_bytes(stored.read_bytes()[:-8])
        await self.manager.verify_artifact(artifact)

        outcomes = await self.replication.replicate_pending()

        assert outcomes == []
        with pytest.raises(InvalidTransition):
            await self.replication.replicate(self.catalog.get(artifact.artifact_id))
        for backend in self.secondaries:
            assert await backend.list_objects() == []

    async def test_payload_changed_after_verification(self):
        artifact = await self.produce_verified()
        stored = self.primary.base_path / artifact.storage_key
        stored.write_bytes(b"tampered")

        with pytest.raises(IntegrityError):
            await self.replication.replicate(artifact)

        assert self.catalog.get(artifact.artifact_id).status == ArtifactStatus.VERIFIED
        for backend in self.secondaries:
            assert await backend.list_objects() == []

    async def test_no_secondaries_counts_as_replicated(self, catalog, primary):
        replication = ReplicationManager(self.settings, catalog, primary, [])
        artifact = await self.produce_verified()

        outcome = await replication.replicate(artifact)

        assert outcome.replicated
        assert self.catalog.get(artifact.artifact_id).remote_locations == {}


class TestReconciliation:
    """Test the read-only consistency scan."""

    @pytest.fixture(autouse=True)
    def setup_managers(self, settings, catalog, primary, secondaries):
        self.settings = settings
        self.catalog = catalog
        self.primary = primary
        self.secondaries = secondaries
        database = SQLiteDatabase(settings.database_path, settings.sandbox_path)
        self.manager = BackupManager(settings, catalog, primary, database)
        self.replication = ReplicationManager(settings, catalog, primary, secondaries)

    async def produce_replicated(self):
        artifact = await self.manager.backup_full()
        await self.manager.verify_artifact(artifact)
        await self.replication.replicate(self.catalog.get(artifact.artifact_id))
        return self.catalog.get(artifact.artifact_id)

    async def test_consistent_regions(self):
        artifact = await self.produce_replicated()

        report = await self.replication.reconcile("region-sync-c1")

        assert report.status == SyncStatus.CONSISTENT
        assert report.primary_count == report.secondary_count == 1
        assert report.primary_bytes == report.secondary_bytes == artifact.size_bytes
        assert report.mismatched_artifact_ids == ()
        assert report.replicated_artifact_ids == (artifact.artifact_id,)

    async def test_missing_copy_is_drift(self):
        artifact = await self.produce_replicated()
        await self.secondaries[1].delete(artifact.storage_key)

        report = await self.replication.reconcile("region-sync-c1")

        assert report.status == SyncStatus.DRIFTED
        assert report.mismatched_artifact_ids == (artifact.artifact_id,)
        assert report.secondary_count == 0
        by_region = {stats.region_id: stats for stats in report.regions}
        assert by_region["region-a"].consistent
        assert by_region["region-b"].missing_ids == (artifact.artifact_id,)
        assert report.replicated_artifact_ids == ()

    async def test_size_mismatch_and_extra_objects(self, temp_dir):
        artifact = await self.produce_replicated()
        (self.secondaries[0].base_path / artifact.storage_key).write_bytes(b"short")
        stray = temp_dir / "stray.bin"
        stray.write_bytes(b"stray")
        await self.secondaries[1].put("artifacts/full/full-20250101T000000Z-ffffff.sql.gz", stray)

        report = await self.replication.reconcile("region-sync-c1")

        by_region = {stats.region_id: stats for stats in report.regions}
        assert by_region["region-a"].size_mismatch_ids == (artifact.artifact_id,)
        assert by_region["region-b"].extra_ids == ("full-20250101T000000Z-ffffff",)
        assert report.mismatched_artifact_ids == ("full-20250101T000000Z-ffffff", artifact.artifact_id)

    async def test_reconcile_is_deterministic_and_read_only(self):
        await self.produce_replicated()
        before = {b.backend_id: await b.list_objects() for b in [self.primary, *self.secondaries]}

        first = await self.replication.reconcile("region-sync-c1")
        second = await self.replication.reconcile("region-sync-c2")

        assert without_identity(first) == without_identity(second)
        after = {b.backend_id: await b.list_objects() for b in [self.primary, *self.secondaries]}
        assert before == after
        assert self.catalog.list_sync_reports() == []

    async def test_grace_window_hides_fresh_objects(self, make_settings, catalog, primary, secondaries):
        await self.produce_replicated()
        replication = ReplicationManager(
            make_settings(reconcile_grace_seconds=3600), catalog, primary, secondaries
        )

        report = await replication.reconcile("region-sync-c1")

        assert report.primary_count == 0
        assert report.status == SyncStatus.CONSISTENT

    async def test_unreachable_region_is_drift(self):
        await self.produce_replicated()

        with patch.object(self.secondaries[0], "list_objects", AsyncMock(side_effect=OSError("stale handle"))):
            report = await self.replication.reconcile("region-sync-c1")

        assert report.status == SyncStatus.DRIFTED
        assert "stale handle" in report.regions[0].error

    async def test_publish_uploads_to_every_region(self):
        await self.produce_replicated()
        report = await self.replication.reconcile("region-sync-c1")

        failures = await self.replication.publish_report(report)

        assert failures == []
        assert self.catalog.get_sync_report("region-sync-c1") == report
        for backend in [self.primary, *self.secondaries]:
            assert await backend.stat("sync/reports/region-sync-c1.json") is not None

    async def test_resync_repairs_missing_copy(self):
        artifact = await self.produce_replicated()
        await self.secondaries[1].delete(artifact.storage_key)
        drifted = await self.replication.reconcile("region-sync-c1")

        copied = await self.replication.resync(drifted)
        repaired = await self.replication.reconcile("region-sync-c2")

        assert copied == {"region-b": [artifact.storage_key]}
        assert repaired.status == SyncStatus.CONSISTENT
        assert self.catalog.get(artifact.artifact_id).region_ids == {"region-a", "region-b"}

    async def test_acknowledge_only_drifted_reports(self):
        artifact = await self.produce_replicated()
        consistent = await self.replication.reconcile("region-sync-c1")
        await self.replication.publish_report(consistent)
        await self.secondaries[1].delete(artifact.storage_key)
        drifted = await self.replication.reconcile("region-sync-c2")
        await self.replication.publish_report(drifted)

        with pytest.raises(BackupError):
            self.replication.acknowledge_drift("region-sync-c1", "alice")
        with pytest.raises(BackupError):
            self.replication.acknowledge_drift("region-sync-unknown", "alice")

        ack = self.replication.acknowledge_drift("region-sync-c2", "alice", "known outage")
        assert ack["operator"] == "alice"
        with pytest.raises(BackupError):
            self.replication.acknowledge_drift("region-sync-c2", "bob")
