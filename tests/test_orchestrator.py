"""
Integration Tests for the Backup Orchestrator
Runs whole cycles against a real SQLite source, a directory file store and
local directories standing in for the primary store and two regions.
"""
from unittest.mock import AsyncMock, patch

import pytest

from drvault.backup.notifications import NotificationChannel, NotificationDispatcher
from drvault.backup.orchestrator import BackupOrchestrator
from drvault.exceptions import TransientIOError
from drvault.models import ArtifactStatus, CycleState, JobType, Severity, SyncStatus


class TestOrchestrator:
    """Test complete cycles and their single notification."""

    @pytest.fixture(autouse=True)
    def setup_channel(self):
        self.channel = NotificationChannel("test")
        self.channel.send = AsyncMock(return_value=True)
        self.dispatcher = NotificationDispatcher([self.channel])

    def make_orchestrator(self, settings) -> BackupOrchestrator:
        return BackupOrchestrator(settings, dispatcher=self.dispatcher)

    @property
    def notification(self):
        assert self.channel.send.await_count == 1
        return self.channel.send.await_args.args[0]

    async def test_full_cycle_end_to_end(self, make_settings, region_configs):
        orchestrator = self.make_orchestrator(make_settings(secondary_regions=region_configs))

        result = await orchestrator.run_cycle(JobType.FULL_BACKUP)

        assert [step.name for step in result.steps] == [
            "produce-full", "produce-file-snapshot", "verify",
            "validate-sample", "replicate", "reconcile", "retain",
        ]
        assert all(step.ok for step in result.steps), [step.to_dict() for step in result.steps]
        assert result.state == CycleState.COMPLETED
        assert result.exit_code == 0
        assert len(result.artifact_ids) == 2
        for artifact_id in result.artifact_ids:
            artifact = orchestrator.catalog.get(artifact_id)
            assert artifact.status == ArtifactStatus.REPLICATED
            assert artifact.region_ids == {"region-a", "region-b"}

        sync_report = orchestrator.catalog.get_sync_report(result.cycle_id)
        assert sync_report.status == SyncStatus.CONSISTENT
        assert sorted(sync_report.replicated_artifact_ids) == sorted(result.artifact_ids)
        assert self.notification.severity == Severity.SUCCESS
        assert self.notification.detail["artifact_ids"] == result.artifact_ids
        assert orchestrator.catalog.summary()["last_cycles"]["full-backup"]["state"] == "completed"

    async def test_missing_configuration_fails_before_any_work(self, make_settings):
        orchestrator = self.make_orchestrator(make_settings(wal_archive_dir=None))

        result = await orchestrator.run_cycle(JobType.INCREMENTAL_SWEEP)

        assert result.state == CycleState.FAILED
        assert result.exit_code == 1
        assert [step.name for step in result.steps] == ["configuration"]
        assert result.steps[0].items == ["wal_archive_dir"]
        assert orchestrator.catalog.list_artifacts() == []
        assert self.notification.severity == Severity.FAILED
        assert "configuration: wal_archive_dir" in self.notification.items

    async def test_region_sync_needs_secondaries(self, settings):
        result = await self.make_orchestrator(settings).run_cycle(JobType.REGION_SYNC)

        assert result.steps[0].items == ["secondary_regions"]

    async def test_corruption_is_critical(self, settings):
        orchestrator = self.make_orchestrator(settings)
        artifact = await orchestrator.backup_manager.backup_full()
        stored = orchestrator.primary.base_path / artifact.storage_key
        stored.write_bytes(stored.read_bytes()[:-16])

        result = await orchestrator.run_cycle(JobType.INCREMENTAL_SWEEP)

        verify = next(step for step in result.steps if step.name == "verify")
        assert verify.severity == Severity.CRITICAL
        assert f"{artifact.artifact_id}: corruption detected, quarantined" in verify.items
        assert result.state == CycleState.FAILED
        assert orchestrator.catalog.get(artifact.artifact_id).status == ArtifactStatus.FAILED
        assert self.notification.severity == Severity.CRITICAL

    async def test_partial_replication_and_drift_are_warnings(self, make_settings, region_configs):
        orchestrator = self.make_orchestrator(make_settings(secondary_regions=region_configs))
        artifact = await orchestrator.backup_manager.backup_full()
        await orchestrator.backup_manager.verify_artifact(artifact)

        with patch.object(
            orchestrator.secondaries[1], "put", AsyncMock(side_effect=TransientIOError("bucket unreachable"))
        ):
            result = await orchestrator.run_cycle(JobType.REGION_SYNC)

        replicate, reconcile = result.steps
        assert replicate.severity == Severity.WARNING
        assert reconcile.severity == Severity.WARNING
        assert f"ack-drift {result.cycle_id}" in reconcile.detail
        assert result.state == CycleState.COMPLETED
        assert result.exit_code == 1
        assert orchestrator.catalog.get(artifact.artifact_id).region_ids == {"region-a"}
        assert self.notification.severity == Severity.WARNING

        ack = orchestrator.acknowledge_drift(result.cycle_id, "alice", "region-b outage")
        assert ack["operator"] == "alice"

    async def test_tampered_payload_is_critical(self, make_settings, region_configs):
        orchestrator = self.make_orchestrator(make_settings(secondary_regions=region_configs))
        artifact = await orchestrator.backup_manager.backup_full()
        await orchestrator.backup_manager.verify_artifact(artifact)
        (orchestrator.primary.base_path / artifact.storage_key).write_bytes(b"tampered")

        result = await orchestrator.run_cycle(JobType.REGION_SYNC)

        assert [step.name for step in result.steps] == ["replicate"]
        assert result.steps[0].severity == Severity.CRITICAL
        assert result.steps[0].data["details"] == {"artifact_id": artifact.artifact_id}
        assert self.notification.severity == Severity.CRITICAL

    async def test_auto_resync_repairs_drift(self, make_settings, region_configs):
        settings = make_settings(secondary_regions=region_configs, auto_resync_on_drift=True)
        orchestrator = self.make_orchestrator(settings)
        artifact = await orchestrator.backup_manager.backup_full()
        await orchestrator.backup_manager.verify_artifact(artifact)
        await orchestrator.replication.replicate(orchestrator.catalog.get(artifact.artifact_id))
        await orchestrator.secondaries[0].delete(artifact.storage_key)

        result = await orchestrator.run_cycle(JobType.REGION_SYNC)

        reconcile = result.steps[-1]
        assert reconcile.ok
        assert reconcile.data["sync_report"]["cycle_id"] == f"{result.cycle_id}-resync"
        assert orchestrator.catalog.get_sync_report(result.cycle_id).status == SyncStatus.DRIFTED
        assert await orchestrator.secondaries[0].stat(artifact.storage_key) is not None

    async def test_stop_request_ends_cycle_between_stages(self, settings):
        orchestrator = self.make_orchestrator(settings)
        orchestrator.request_stop()

        result = await orchestrator.run_cycle(JobType.FULL_BACKUP)

        assert len(result.steps) == 1
        assert result.steps[0].severity == Severity.WARNING
        assert orchestrator.catalog.list_artifacts() == []
        assert self.channel.send.await_count == 1

    async def test_exhausted_budget(self, make_settings):
        orchestrator = self.make_orchestrator(make_settings(cycle_budget_seconds=0))

        result = await orchestrator.run_cycle(JobType.RETENTION)

        assert result.state == CycleState.FAILED
        assert "budget" in result.steps[0].detail

    async def test_capacity_error_stops_cycle(self, make_settings):
        orchestrator = self.make_orchestrator(make_settings(min_free_bytes=2 ** 62))

        result = await orchestrator.run_cycle(JobType.FULL_BACKUP)

        assert [step.name for step in result.steps] == ["produce-full"]
        assert result.steps[0].data["error"] == "CapacityError"
        assert result.state == CycleState.FAILED

    async def test_unexpected_error_still_finishes_cycle(self, settings):
        orchestrator = self.make_orchestrator(settings)

        with patch.object(
            orchestrator.backup_manager, "backup_full", AsyncMock(side_effect=RuntimeError("driver bug"))
        ):
            result = await orchestrator.run_cycle(JobType.FULL_BACKUP)

        assert [step.name for step in result.steps] == ["produce-full"]
        assert result.steps[0].data["error"] == "RuntimeError"
        assert result.state == CycleState.FAILED
        assert orchestrator.catalog.summary()["last_cycles"]["full-backup"]["state"] == "failed"
        assert self.notification.severity == Severity.FAILED

    async def test_incremental_without_new_segments(self, settings):
        orchestrator = self.make_orchestrator(settings)
        await orchestrator.run_cycle(JobType.INCREMENTAL_SWEEP)

        result = await orchestrator.run_cycle(JobType.INCREMENTAL_SWEEP)

        assert result.succeeded
        assert result.artifact_ids == []
        assert result.steps[0].detail == "No new WAL segments to archive"

    async def test_validation_cycle_with_pitr_probe(self, settings):
        orchestrator = self.make_orchestrator(settings)
        await orchestrator.run_cycle(JobType.FULL_BACKUP)

        result = await orchestrator.run_cycle(JobType.VALIDATION, sample_size=1)

        assert result.succeeded, result.steps[0].to_dict()
        assert result.steps[0].data["score"] == 100

    async def test_status(self, settings):
        orchestrator = self.make_orchestrator(settings)
        await orchestrator.run_cycle(JobType.FILE_SNAPSHOT)

        status = orchestrator.status()

        assert status["artifacts_by_kind"]["file-snapshot"] == 1
        assert status["primary"]["region"] == "primary"
        assert status["secondaries"] == []
