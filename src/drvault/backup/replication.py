"""
Cross-Region Replication

Copies verified artifacts to every secondary region, retrying each region
once, and reconciles object counts and sizes between the primary store and
each secondary. Reconciliation only reads the stores.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path, PurePosixPath
from typing import Any

from drvault.backup.backup_manager import Clock, utcnow
from drvault.backup.catalog import ARTIFACT_PREFIX, ArtifactCatalog
from drvault.backup.integrity import calculate_checksum
from drvault.backup.storage_backends import ObjectInfo, StorageBackend
from drvault.config import BackupSettings
from drvault.exceptions import BackupError, IntegrityError, InvalidTransition, TransientIOError, with_timeout
from drvault.logging import get_logger
from drvault.models import (
    ArtifactStatus,
    BackupArtifact,
    RegionRef,
    RegionSyncStats,
    SyncReport,
    SyncStatus,
)

logger = get_logger(__name__)

SYNC_REPORT_PREFIX = "sync/reports/"


def artifact_id_from_key(key: str) -> str:
    """``artifacts/full/full-20260101T020000Z-a1b2c3.sql.gz`` -> ``full-20260101T020000Z-a1b2c3``"""
    return PurePosixPath(key).name.split(".", 1)[0]


@dataclass
class ReplicationOutcome:
    """Per-artifact replication result."""
    artifact_id: str
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    status: ArtifactStatus = ArtifactStatus.VERIFIED

    @property
    def partial(self) -> bool:
        return bool(self.failed) and bool(self.succeeded)

    @property
    def replicated(self) -> bool:
        return self.status == ArtifactStatus.REPLICATED

    def to_dict(self) -> dict[str, Any]:
        return {
            'artifact_id': self.artifact_id,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'status': self.status.value,
        }


class ReplicationManager:
    """Replication to secondary regions and consistency reconciliation."""

    def __init__(
        self,
        settings: BackupSettings,
        catalog: ArtifactCatalog,
        primary: StorageBackend,
        secondaries: list[StorageBackend],
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.catalog = catalog
        self.primary = primary
        self.secondaries = secondaries
        self.clock = clock

    async def _copy_to_region(
        self,
        artifact: BackupArtifact,
        backend: StorageBackend,
        payload: Path,
        metadata: dict[str, str],
    ) -> None:
        """One copy attempt: upload then confirm the stored size."""
        await with_timeout(
            backend.put(artifact.storage_key, payload, self.settings.storage_class, metadata),
            self.settings.operation_timeout_seconds,
            f"upload to {backend.backend_id}",
        )
        stored = await with_timeout(
            backend.stat(artifact.storage_key),
            self.settings.operation_timeout_seconds,
            f"stat on {backend.backend_id}",
        )
        if stored is None or stored.size_bytes != artifact.size_bytes:
            raise TransientIOError(
                f"Copy of {artifact.artifact_id} in {backend.backend_id} has the wrong size"
            )

    async def replicate(self, artifact: BackupArtifact) -> ReplicationOutcome:
        """
        Copy a verified artifact to every secondary region.

        Each failing region is retried once. The artifact becomes ``replicated``
        when at least one region holds it, or when no secondary region is
        configured; its remote locations list exactly the regions holding it.
        """
        outcome = ReplicationOutcome(artifact_id=artifact.artifact_id, status=artifact.status)
        if artifact.status != ArtifactStatus.VERIFIED:
            raise InvalidTransition(
                f"Only verified artifacts can be replicated ({artifact.artifact_id} is {artifact.status.value})"
            )

        remote_locations = dict(artifact.remote_locations)
        pending = [b for b in self.secondaries if b.backend_id not in remote_locations]
        outcome.succeeded.extend(sorted(remote_locations))

        if pending:
            payload = self.settings.staging_path / f"replicate-{artifact.artifact_id}"
            try:
                await with_timeout(
                    self.primary.get(artifact.storage_key, payload),
                    self.settings.operation_timeout_seconds, "payload download",
                )
                if artifact.checksum and calculate_checksum(payload) != artifact.checksum:
                    raise IntegrityError(
                        f"Payload of {artifact.artifact_id} changed after verification",
                        artifact_id=artifact.artifact_id,
                    )
                info = await self.primary.stat(artifact.storage_key)
                metadata = dict(info.metadata) if info else {}
                metadata["source-region"] = self.primary.region

                for backend in pending:
                    error = await self._copy_with_one_retry(artifact, backend, payload, metadata)
                    if error is None:
                        remote_locations[backend.backend_id] = RegionRef(
                            backend.backend_id, backend.location, self.clock()
                        )
                        outcome.succeeded.append(backend.backend_id)
                    else:
                        outcome.failed[backend.backend_id] = error
            finally:
                payload.unlink(missing_ok=True)

        if remote_locations or not self.secondaries:
            updated = self.catalog.transition(
                artifact.artifact_id, ArtifactStatus.VERIFIED, ArtifactStatus.REPLICATED,
                self.clock(), remote_locations=remote_locations,
            )
            outcome.status = updated.status

        if outcome.failed:
            logger.warning(
                f"Replication of {artifact.artifact_id} failed for "
                f"{', '.join(sorted(outcome.failed))}; succeeded for {', '.join(outcome.succeeded) or 'none'}",
                extra={"artifact_id": artifact.artifact_id},
            )
        else:
            logger.info(f"Replicated {artifact.artifact_id} to {', '.join(outcome.succeeded) or 'no regions'}")
        return outcome

    async def _copy_with_one_retry(
        self,
        artifact: BackupArtifact,
        backend: StorageBackend,
        payload: Path,
        metadata: dict[str, str],
    ) -> str | None:
        """Returns None on success, otherwise the last error message."""
        last_error = ""
        for attempt in (1, 2):
            try:
                await self._copy_to_region(artifact, backend, payload, metadata)
                return None
            except (BackupError, OSError) as e:
                last_error = str(e)
                logger.warning(
                    f"Copy of {artifact.artifact_id} to {backend.backend_id} failed "
                    f"(attempt {attempt}/2): {e}"
                )
        return last_error

    async def replicate_pending(self) -> list[ReplicationOutcome]:
        """Replicate every verified artifact, oldest first."""
        outcomes = []
        for artifact in self.catalog.list_artifacts(statuses={ArtifactStatus.VERIFIED}):
            outcomes.append(await self.replicate(artifact))
        return outcomes

    async def _list_older_than_grace(self, backend: StorageBackend) -> list[ObjectInfo]:
        cutoff = self.clock() - timedelta(seconds=self.settings.reconcile_grace_seconds)
        objects = await with_timeout(
            backend.list_objects(ARTIFACT_PREFIX),
            self.settings.operation_timeout_seconds,
            f"consistency scan of {backend.backend_id}",
        )
        return [obj for obj in objects if obj.modified_at <= cutoff]

    async def reconcile(self, cycle_id: str) -> SyncReport:
        """
        Compare the primary artifact namespace with every secondary.

        Objects written within the grace window are left out on both sides so
        in-flight copies are not reported as drift. Nothing is written.
        """
        primary_objects = {obj.key: obj for obj in await self._list_older_than_grace(self.primary)}
        primary_bytes = sum(obj.size_bytes for obj in primary_objects.values())

        regions: list[RegionSyncStats] = []
        present_everywhere = set(primary_objects)
        for backend in self.secondaries:
            try:
                secondary_objects = {obj.key: obj for obj in await self._list_older_than_grace(backend)}
            except (BackupError, OSError) as e:
                regions.append(RegionSyncStats(backend.backend_id, 0, 0, error=str(e)))
                present_everywhere = set()
                continue

            missing = sorted(key for key in primary_objects if key not in secondary_objects)
            size_mismatch = sorted(
                key for key, obj in primary_objects.items()
                if key in secondary_objects and secondary_objects[key].size_bytes != obj.size_bytes
            )
            extra = sorted(key for key in secondary_objects if key not in primary_objects)
            present_everywhere -= set(missing) | set(size_mismatch)

            regions.append(RegionSyncStats(
                region_id=backend.backend_id,
                secondary_count=len(secondary_objects),
                secondary_bytes=sum(obj.size_bytes for obj in secondary_objects.values()),
                missing_ids=tuple(artifact_id_from_key(key) for key in missing),
                size_mismatch_ids=tuple(artifact_id_from_key(key) for key in size_mismatch),
                extra_ids=tuple(artifact_id_from_key(key) for key in extra),
            ))

        mismatched = sorted({
            artifact_id
            for stats in regions
            for artifact_id in (*stats.missing_ids, *stats.size_mismatch_ids, *stats.extra_ids)
        })
        drifted = any(not stats.consistent for stats in regions)

        # The worst region stands for the secondary side
        worst = min(regions, key=lambda s: (s.consistent, s.secondary_count), default=None)
        report = SyncReport(
            cycle_id=cycle_id,
            created_at=self.clock(),
            primary_count=len(primary_objects),
            secondary_count=worst.secondary_count if worst else 0,
            primary_bytes=primary_bytes,
            secondary_bytes=worst.secondary_bytes if worst else 0,
            mismatched_artifact_ids=tuple(mismatched),
            status=SyncStatus.DRIFTED if drifted else SyncStatus.CONSISTENT,
            regions=tuple(regions),
            replicated_artifact_ids=tuple(sorted(
                artifact_id_from_key(key) for key in present_everywhere
            )) if self.secondaries else (),
        )

        if drifted:
            logger.warning(
                f"Consistency drift in {cycle_id}: {', '.join(mismatched) or 'region unreachable'}"
            )
        else:
            logger.info(f"Regions consistent in {cycle_id} ({report.primary_count} objects)")
        return report

    async def publish_report(self, report: SyncReport) -> list[str]:
        """
        Persist a sync report and upload it to every region.

        Returns:
            Regions the upload failed for
        """
        path = self.catalog.save_sync_report(report)
        failures = []
        for backend in [self.primary, *self.secondaries]:
            try:
                await with_timeout(
                    backend.put(
                        f"{SYNC_REPORT_PREFIX}{report.cycle_id}.json", path, None,
                        {"cycle-id": report.cycle_id, "status": report.status.value},
                    ),
                    self.settings.operation_timeout_seconds,
                    f"report upload to {backend.backend_id}",
                )
            except (BackupError, OSError) as e:
                failures.append(backend.backend_id)
                logger.warning(f"Could not upload sync report to {backend.backend_id}: {e}")
        return failures

    async def resync(self, report: SyncReport) -> dict[str, list[str]]:
        """
        Re-copy missing or mis-sized objects once per drifted region.

        Only called when ``auto_resync_on_drift`` is enabled; otherwise drift
        waits for an operator.
        """
        copied: dict[str, list[str]] = {}
        by_id = {backend.backend_id: backend for backend in self.secondaries}
        for stats in report.regions:
            if not (stats.missing_ids or stats.size_mismatch_ids) or stats.region_id not in by_id:
                continue
            backend = by_id[stats.region_id]
            try:
                keys = await self.primary.sync(
                    ARTIFACT_PREFIX, backend, self.settings.staging_path, self.settings.storage_class
                )
            except (BackupError, OSError) as e:
                logger.warning(f"Re-sync to {stats.region_id} failed: {e}")
                continue
            copied[stats.region_id] = keys
            for key in keys:
                self._record_copy(artifact_id_from_key(key), backend)
        return copied

    def _record_copy(self, artifact_id: str, backend: StorageBackend) -> None:
        artifact = self.catalog.get(artifact_id)
        if artifact is None:
            return
        remote_locations = dict(artifact.remote_locations)
        remote_locations[backend.backend_id] = RegionRef(backend.backend_id, backend.location, self.clock())
        if artifact.status == ArtifactStatus.VERIFIED:
            self.catalog.transition(
                artifact_id, ArtifactStatus.VERIFIED, ArtifactStatus.REPLICATED,
                self.clock(), remote_locations=remote_locations,
            )
        elif artifact.status == ArtifactStatus.REPLICATED:
            self.catalog.update(artifact_id, artifact.revision, remote_locations=remote_locations)

    def acknowledge_drift(self, cycle_id: str, operator: str, note: str = "") -> dict[str, Any]:
        """Record that an operator has looked at a drifted sync report."""
        report = self.catalog.get_sync_report(cycle_id)
        if report is None:
            raise BackupError(f"No sync report for cycle {cycle_id}")
        if report.status != SyncStatus.DRIFTED:
            raise BackupError(f"Sync report {cycle_id} is {report.status.value}; nothing to acknowledge")
        if self.catalog.get_acknowledgement(cycle_id) is not None:
            raise BackupError(f"Drift in {cycle_id} was already acknowledged")
        ack = self.catalog.acknowledge_drift(cycle_id, operator, note)
        logger.info(f"Drift in {cycle_id} acknowledged by {operator}")
        return ack
