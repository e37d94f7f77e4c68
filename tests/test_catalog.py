"""
Unit Tests for the Artifact Catalog
Tests compare-and-set transitions, leases, the WAL cursor, append-only
records and rebuilding from the primary store.
"""
from datetime import datetime, timedelta, timezone

import pytest

from drvault.backup.catalog import ArtifactCatalog
from drvault.exceptions import InvalidTransition
from drvault.models import (
    ArtifactKind,
    ArtifactStatus,
    CycleResult,
    CycleState,
    JobType,
    SyncReport,
    SyncStatus,
    ValidationKind,
    ValidationOutcome,
    ValidationRun,
)


class TestArtifactRecords:
    """Test artifact documents and status transitions."""

    def test_add_and_get(self, catalog, make_artifact):
        catalog.add(make_artifact())

        artifact = catalog.get("full-20260101T020000Z-aaaaaa")

        assert artifact.status == ArtifactStatus.CREATED
        assert artifact.revision == 0
        assert catalog.get("missing") is None

    def test_artifact_ids_are_never_reused(self, catalog, make_artifact):
        catalog.add(make_artifact())

        with pytest.raises(FileExistsError):
            catalog.add(make_artifact())

    def test_transition_appends_history(self, catalog, make_artifact):
        catalog.add(make_artifact())
        at = datetime(2026, 1, 1, 3, 0, tzinfo=timezone.utc)

        artifact = catalog.transition(
            "full-20260101T020000Z-aaaaaa", ArtifactStatus.CREATED, ArtifactStatus.VERIFIED, at
        )

        assert artifact.status == ArtifactStatus.VERIFIED
        assert artifact.revision == 1
        assert artifact.status_history[-1] == {"status": "verified", "at": at.isoformat()}
        assert catalog.get(artifact.artifact_id).status == ArtifactStatus.VERIFIED

    def test_transition_rejects_stale_expected_status(self, catalog, make_artifact):
        catalog.add(make_artifact())
        catalog.transition("full-20260101T020000Z-aaaaaa", ArtifactStatus.CREATED, ArtifactStatus.VERIFIED)

        with pytest.raises(InvalidTransition):
            catalog.transition(
                "full-20260101T020000Z-aaaaaa", ArtifactStatus.CREATED, ArtifactStatus.FAILED
            )

    def test_transition_rejects_skipping_states(self, catalog, make_artifact):
        catalog.add(make_artifact())

        with pytest.raises(InvalidTransition):
            catalog.transition(
                "full-20260101T020000Z-aaaaaa", ArtifactStatus.CREATED, ArtifactStatus.REPLICATED
            )
        assert catalog.get("full-20260101T020000Z-aaaaaa").status == ArtifactStatus.CREATED

    def test_update_checks_revision(self, catalog, make_artifact):
        catalog.add(make_artifact())

        catalog.update("full-20260101T020000Z-aaaaaa", 0, error_message="note")
        with pytest.raises(InvalidTransition):
            catalog.update("full-20260101T020000Z-aaaaaa", 0, error_message="stale")
        with pytest.raises(ValueError):
            catalog.update("full-20260101T020000Z-aaaaaa", 1, status=ArtifactStatus.FAILED)

    def test_list_filters_and_orders_oldest_first(self, catalog, make_artifact):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        catalog.add(make_artifact("full-2", created_at=base + timedelta(days=2)))
        catalog.add(make_artifact("full-1", created_at=base + timedelta(days=1)))
        catalog.add(make_artifact("incremental-1", kind=ArtifactKind.INCREMENTAL, created_at=base))
        catalog.transition("full-2", ArtifactStatus.CREATED, ArtifactStatus.VERIFIED)

        assert [a.artifact_id for a in catalog.list_artifacts()] == ["incremental-1", "full-1", "full-2"]
        assert [a.artifact_id for a in catalog.list_artifacts(kind=ArtifactKind.FULL)] == ["full-1", "full-2"]
        assert [
            a.artifact_id for a in catalog.list_artifacts(statuses={ArtifactStatus.VERIFIED})
        ] == ["full-2"]


class TestLeases:
    """Test exclusive artifact leases."""

    def setup_method(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_second_holder_is_refused(self, catalog):
        assert catalog.acquire_lease("full-1", "validation:c1", 60, self.now)
        assert not catalog.acquire_lease("full-1", "retention", 60, self.now)

    def test_release_only_by_holder(self, catalog):
        catalog.acquire_lease("full-1", "validation:c1", 60, self.now)

        catalog.release_lease("full-1", "retention")
        assert not catalog.acquire_lease("full-1", "retention", 60, self.now)

        catalog.release_lease("full-1", "validation:c1")
        assert catalog.acquire_lease("full-1", "retention", 60, self.now)

    def test_expired_lease_is_taken_over(self, catalog):
        catalog.acquire_lease("full-1", "validation:c1", 60, self.now)

        later = self.now + timedelta(seconds=61)
        assert catalog.acquire_lease("full-1", "retention", 60, later)
        assert [lease["holder"] for lease in catalog.active_leases(later)] == ["retention"]


class TestCursorAndCounters:
    """Test the WAL high-water mark and the archive counter."""

    def test_cursor_only_moves_forward(self, catalog):
        assert catalog.get_wal_cursor() is None

        catalog.advance_wal_cursor("000000010000000000000002", "incremental-1")
        assert catalog.get_wal_cursor() == "000000010000000000000002"

        with pytest.raises(InvalidTransition):
            catalog.advance_wal_cursor("000000010000000000000001", "incremental-2")
        with pytest.raises(InvalidTransition):
            catalog.advance_wal_cursor("000000010000000000000002", "incremental-2")

    def test_archive_counter(self, catalog):
        assert catalog.get_archive_counter() is None
        catalog.set_archive_counter(12)
        assert catalog.get_archive_counter() == 12


class TestAppendOnlyRecords:
    """Test validation runs, sync reports and acknowledgements."""

    def test_validation_runs_are_append_only(self, catalog):
        run = ValidationRun(
            run_id="c1-full-1",
            artifact_id="full-1",
            tested_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            kind=ValidationKind.RESTORE_DATABASE,
            outcome=ValidationOutcome.PASS,
            cycle_id="c1",
        )
        catalog.append_validation_run(run)

        with pytest.raises(FileExistsError):
            catalog.append_validation_run(run)
        assert catalog.list_validation_runs("full-1") == [run]
        assert catalog.list_validation_runs("full-2") == []

    def test_sync_report_and_acknowledgement(self, catalog):
        report = SyncReport(
            cycle_id="region-sync-1",
            created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            primary_count=2,
            secondary_count=1,
            primary_bytes=20,
            secondary_bytes=10,
            mismatched_artifact_ids=("full-2",),
            status=SyncStatus.DRIFTED,
        )
        catalog.save_sync_report(report)
        catalog.acknowledge_drift("region-sync-1", "alice", "region-b maintenance")

        assert catalog.get_sync_report("region-sync-1") == report
        assert [r.cycle_id for r in catalog.list_sync_reports()] == ["region-sync-1"]
        assert catalog.get_acknowledgement("region-sync-1")["operator"] == "alice"
        with pytest.raises(FileExistsError):
            catalog.save_sync_report(report)

    def test_cycle_records_and_summary(self, catalog, make_artifact):
        catalog.add(make_artifact())
        result = CycleResult(
            cycle_id="full-backup-1",
            job_type=JobType.FULL_BACKUP,
            started_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            state=CycleState.COMPLETED,
        )
        catalog.record_cycle(result)

        summary = catalog.summary()

        assert summary["artifacts_by_status"]["created"] == 1
        assert summary["artifacts_by_kind"]["full"] == 1
        assert summary["stored_bytes"] == 1024
        assert summary["last_cycles"]["full-backup"]["state"] == "completed"


class TestRebuild:
    """Test re-deriving the catalog from the primary store."""

    async def test_rebuild_from_object_metadata(self, temp_dir, primary, secondaries):
        payload = temp_dir / "payload.bin"
        payload.write_bytes(b"p" * 64)
        metadata = {
            "artifact-id": "full-20260101T020000Z-aaaaaa",
            "kind": "full",
            "created-at": "2026-01-01T02:00:00+00:00",
            "checksum": "c" * 64,
            "source-system": "sqlite:source.db",
            "payload-format": "sql.gz",
        }
        await primary.put("artifacts/full/full-20260101T020000Z-aaaaaa.sql.gz", payload, metadata=metadata)
        await secondaries[0].put("artifacts/full/full-20260101T020000Z-aaaaaa.sql.gz", payload)
        await primary.put(
            "quarantine/full/full-20260102T020000Z-bbbbbb.sql.gz", payload,
            metadata={**metadata, "artifact-id": "full-20260102T020000Z-bbbbbb"},
        )
        await primary.put("artifacts/full/stray.sql.gz", payload)

        catalog = ArtifactCatalog(temp_dir / "rebuilt")
        stats = await catalog.rebuild(primary, secondaries)

        assert stats == {"restored": 2, "skipped": 0, "unrecognized": 1}
        rebuilt = catalog.get("full-20260101T020000Z-aaaaaa")
        assert rebuilt.status == ArtifactStatus.CREATED
        assert rebuilt.checksum == "c" * 64
        assert rebuilt.region_ids == {"region-a"}
        assert catalog.get("full-20260102T020000Z-bbbbbb").status == ArtifactStatus.FAILED

        again = await catalog.rebuild(primary, secondaries)
        assert again["skipped"] == 2
