"""
Retention Management

Expires replicated artifacts older than their policy allows, deleting them
from the primary store and every region that holds a copy.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from drvault.backup.backup_manager import Clock, utcnow
from drvault.backup.catalog import ArtifactCatalog
from drvault.backup.storage_backends import StorageBackend
from drvault.config import BackupSettings
from drvault.exceptions import BackupError, InvalidTransition, with_timeout
from drvault.logging import get_logger
from drvault.models import ArtifactStatus, BackupArtifact, RetentionPolicy

logger = get_logger(__name__)

RETENTION_HOLDER = "retention"

RESIDUAL_PREFIX = "Residual copies left in: "


@dataclass
class ExpiredSet:
    """Artifacts expired by one retention pass."""
    expired: list[str] = field(default_factory=list)
    residual: dict[str, list[str]] = field(default_factory=dict)
    cleaned: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    bytes_freed: int = 0

    def merge(self, other: ExpiredSet) -> None:
        self.expired.extend(other.expired)
        self.residual.update(other.residual)
        self.cleaned.extend(other.cleaned)
        self.skipped.extend(other.skipped)
        self.bytes_freed += other.bytes_freed

    def to_dict(self) -> dict[str, Any]:
        return {
            'expired': self.expired,
            'residual': self.residual,
            'cleaned': self.cleaned,
            'skipped': self.skipped,
            'bytes_freed': self.bytes_freed,
        }


class RetentionManager:
    """
    Retention manager.

    Only ``replicated`` artifacts are eligible, so verification and replication
    always precede deletion. Quarantined (``failed``) artifacts are left alone.
    Deletion is best effort per destination; a destination that could not be
    cleaned is logged and recorded on the expired artifact, and retried on
    every later pass until it succeeds.
    """

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
        self.secondaries = {backend.backend_id: backend for backend in secondaries}
        self.clock = clock

    def eligible(self, policy: RetentionPolicy, now: datetime) -> list[BackupArtifact]:
        return [
            artifact
            for artifact in self.catalog.list_artifacts(
                kind=policy.applies_to, statuses={ArtifactStatus.REPLICATED}
            )
            if policy.is_expired(artifact, now)
        ]

    def pending_cleanup(self, policy: RetentionPolicy) -> list[BackupArtifact]:
        """Expired artifacts that still have copies left somewhere."""
        return [
            artifact
            for artifact in self.catalog.list_artifacts(
                kind=policy.applies_to, statuses={ArtifactStatus.EXPIRED}
            )
            if artifact.remote_locations or (artifact.error_message or "").startswith(RESIDUAL_PREFIX)
        ]

    async def _delete(self, backend: StorageBackend, key: str) -> str | None:
        """Delete one copy. Returns the error message on failure."""
        try:
            await with_timeout(
                backend.delete(key), self.settings.operation_timeout_seconds, f"delete on {backend.backend_id}"
            )
            return None
        except (BackupError, OSError) as e:
            return str(e)

    async def expire(self, policy: RetentionPolicy, now: datetime | None = None) -> ExpiredSet:
        """
        Expire every artifact of ``policy.applies_to`` aged ``max_age_days`` or more.

        Copies left behind by earlier passes are retried as well.

        Args:
            policy: Retention policy to apply
            now: Reference time for ages

        Returns:
            Expired ids, residual destinations per artifact, cleaned-up ids and
            leased (skipped) ids
        """
        now = now or self.clock()
        result = ExpiredSet()

        for artifact in self.eligible(policy, now):
            if not self.catalog.acquire_lease(
                artifact.artifact_id, RETENTION_HOLDER, self.settings.operation_timeout_seconds, now
            ):
                result.skipped.append(artifact.artifact_id)
                continue
            try:
                current = self.catalog.get(artifact.artifact_id)
                if current is None or current.status != ArtifactStatus.REPLICATED:
                    continue
                logger.info(
                    f"Expiring {current.artifact_id}: {current.age_days(now)} days old, "
                    f"policy {policy.max_age_days} days",
                    extra={"artifact_id": current.artifact_id},
                )
                residual = await self._delete_everywhere(current)
                self.catalog.transition(
                    current.artifact_id, ArtifactStatus.REPLICATED, ArtifactStatus.EXPIRED, now,
                    remote_locations={
                        region_id: ref for region_id, ref in current.remote_locations.items()
                        if region_id in residual
                    },
                    error_message=(
                        f"{RESIDUAL_PREFIX}{', '.join(sorted(residual))}" if residual else None
                    ),
                )
                result.expired.append(current.artifact_id)
                result.bytes_freed += current.size_bytes
                if residual:
                    result.residual[current.artifact_id] = sorted(residual)
            except InvalidTransition as e:
                logger.warning(f"Skipped expiring {artifact.artifact_id}: {e}")
                result.skipped.append(artifact.artifact_id)
            finally:
                self.catalog.release_lease(artifact.artifact_id, RETENTION_HOLDER)

        for artifact in self.pending_cleanup(policy):
            if artifact.artifact_id in result.expired:
                continue
            await self._retry_residual(artifact, now, result)

        logger.info(
            f"Retention for {policy.applies_to.value} ({policy.max_age_days} days): "
            f"{len(result.expired)} expired, {len(result.cleaned)} cleaned up, "
            f"{len(result.residual)} with residual copies, "
            f"{len(result.skipped)} skipped"
        )
        return result

    async def _retry_residual(self, artifact: BackupArtifact, now: datetime, result: ExpiredSet) -> None:
        if not self.catalog.acquire_lease(
            artifact.artifact_id, RETENTION_HOLDER, self.settings.operation_timeout_seconds, now
        ):
            result.skipped.append(artifact.artifact_id)
            return
        try:
            current = self.catalog.get(artifact.artifact_id)
            if current is None or current.status != ArtifactStatus.EXPIRED:
                return
            residual = await self._delete_everywhere(current)
            self.catalog.update(
                current.artifact_id, current.revision,
                remote_locations={
                    region_id: ref for region_id, ref in current.remote_locations.items()
                    if region_id in residual
                },
                error_message=f"{RESIDUAL_PREFIX}{', '.join(sorted(residual))}" if residual else None,
            )
            if residual:
                result.residual[current.artifact_id] = sorted(residual)
            else:
                logger.info(f"Removed residual copies of {current.artifact_id}")
                result.cleaned.append(current.artifact_id)
        except InvalidTransition as e:
            logger.warning(f"Skipped cleaning up {artifact.artifact_id}: {e}")
            result.skipped.append(artifact.artifact_id)
        finally:
            self.catalog.release_lease(artifact.artifact_id, RETENTION_HOLDER)

    async def _delete_everywhere(self, artifact: BackupArtifact) -> dict[str, str]:
        """Delete the primary copy and every remote copy; returns failures by destination."""
        residual: dict[str, str] = {}

        error = await self._delete(self.primary, artifact.storage_key)
        if error:
            residual[self.primary.backend_id] = error

        for region_id in sorted(artifact.remote_locations):
            backend = self.secondaries.get(region_id)
            if backend is None:
                residual[region_id] = "region is no longer configured"
                continue
            error = await self._delete(backend, artifact.storage_key)
            if error:
                residual[region_id] = error

        for destination, error in residual.items():
            logger.warning(
                f"Residual cost: {artifact.artifact_id} could not be deleted from {destination}: {error}",
                extra={"artifact_id": artifact.artifact_id},
            )
        return residual

    async def apply_policies(self, policies: list[RetentionPolicy] | None = None) -> ExpiredSet:
        """Apply every configured retention policy."""
        now = self.clock()
        total = ExpiredSet()
        for policy in policies if policies is not None else self.settings.retention_policies():
            total.merge(await self.expire(policy, now))
        return total
