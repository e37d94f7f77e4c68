"""
Backup Manager

Produces full, incremental (WAL segment) and file-snapshot artifacts and runs
them through the integrity gate. Payloads are written to a staging file,
checksummed from the finished payload, renamed into place and only then
uploaded to the primary store and recorded in the catalog.
"""
from __future__ import annotations

import os
import shutil
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from drvault.backup.catalog import ARTIFACT_PREFIX, QUARANTINE_PREFIX, ArtifactCatalog
from drvault.backup.collaborators import (
    DatabaseCollaborator,
    FileStoreCollaborator,
    WalArchive,
    hostname,
)
from drvault.backup.integrity import (
    CheckResult,
    IntegrityCheck,
    IntegrityVerifier,
    PayloadFormat,
    VerificationOutcome,
    VerificationReport,
    calculate_checksum,
)
from drvault.backup.storage_backends import StorageBackend
from drvault.config import BackupSettings
from drvault.exceptions import CapacityError, ConfigurationError, TransientIOError, call_with_retry, with_timeout
from drvault.logging import get_logger
from drvault.models import ArtifactKind, ArtifactStatus, BackupArtifact

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupManager:
    """
    Backup producer and integrity gate.

    Every produced artifact starts as ``created``; :meth:`verify_artifact` moves
    it to ``verified`` or quarantines it and marks it ``failed``.
    """

    def __init__(
        self,
        settings: BackupSettings,
        catalog: ArtifactCatalog,
        primary: StorageBackend,
        database: DatabaseCollaborator | None = None,
        file_store: FileStoreCollaborator | None = None,
        verifier: IntegrityVerifier | None = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.catalog = catalog
        self.primary = primary
        self.database = database
        self.file_store = file_store
        self.verifier = verifier or IntegrityVerifier()
        self.clock = clock
        self.staging_path = settings.staging_path
        self.staging_path.mkdir(parents=True, exist_ok=True)

    def _new_artifact_id(self, kind: ArtifactKind, now: datetime) -> str:
        return f"{kind.value}-{now.strftime('%Y%m%dT%H%M%SZ')}-{uuid.uuid4().hex[:6]}"

    def _check_capacity(self) -> None:
        usage = shutil.disk_usage(self.staging_path)
        if usage.free < self.settings.min_free_bytes:
            raise CapacityError(
                f"Insufficient space in {self.staging_path}",
                required_bytes=self.settings.min_free_bytes,
                available_bytes=usage.free,
            )

    async def _with_retry(self, func: Callable[..., Awaitable[Any]], *args: Any, operation: str) -> Any:
        """Retry ``TransientIOError`` with backoff; every attempt is time-bounded."""
        async def attempt() -> Any:
            return await with_timeout(func(*args), self.settings.operation_timeout_seconds, operation)

        return await call_with_retry(
            attempt,
            max_retries=self.settings.retry_attempts,
            delay=self.settings.retry_delay_seconds,
            backoff=self.settings.retry_backoff,
            exceptions=TransientIOError,
        )

    async def _produce(
        self,
        kind: ArtifactKind,
        payload_format: PayloadFormat,
        source_system: str,
        write_payload: Callable[[Path], Awaitable[dict[str, Any]]],
        cycle_id: str | None = None,
    ) -> BackupArtifact:
        """
        Write, checksum, upload and catalogue one artifact.

        Args:
            kind: Artifact kind
            payload_format: Format the writer produces
            source_system: Source identifier recorded on the artifact
            write_payload: Coroutine writing the payload to the given path and
                returning extra artifact fields
            cycle_id: Cycle producing the artifact

        Raises:
            CapacityError: not enough local space (never retried)
            TransientIOError: source unreachable after every retry
        """
        self._check_capacity()

        now = self.clock()
        artifact_id = self._new_artifact_id(kind, now)
        file_name = f"{artifact_id}.{payload_format.extension}"
        partial_path = self.staging_path / f"{file_name}.partial"
        final_path = self.staging_path / file_name
        storage_key = f"{ARTIFACT_PREFIX}{kind.value}/{file_name}"

        logger.info(f"Producing {kind.value} artifact {artifact_id}")
        try:
            extra = await self._with_retry(write_payload, partial_path, operation=f"{kind.value} dump")
            checksum = calculate_checksum(partial_path, self.verifier.checksum_algorithm)
            os.replace(partial_path, final_path)
            size_bytes = final_path.stat().st_size

            metadata = {
                "artifact-id": artifact_id,
                "kind": kind.value,
                "created-at": now.isoformat(),
                "backup-date": now.strftime("%Y-%m-%d"),
                "hostname": hostname(),
                "checksum": checksum,
                "source-system": source_system,
                "payload-format": payload_format.value,
            }
            await self._with_retry(
                self.primary.put, storage_key, final_path, self.settings.storage_class, metadata,
                operation="primary upload",
            )
            stored = await self.primary.stat(storage_key)
            if stored is None or stored.size_bytes != size_bytes:
                raise TransientIOError(f"Upload of {storage_key} to {self.primary.backend_id} is incomplete")

            artifact = BackupArtifact(
                artifact_id=artifact_id,
                kind=kind,
                created_at=now,
                source_system=source_system,
                storage_key=storage_key,
                local_path=f"{self.primary.location}/{storage_key}",
                size_bytes=size_bytes,
                checksum=checksum,
                payload_format=payload_format.value,
                hostname=metadata["hostname"],
                tags={"cycle_id": cycle_id} if cycle_id else {},
                **extra,
            )
            self.catalog.add(artifact)
        finally:
            partial_path.unlink(missing_ok=True)
            final_path.unlink(missing_ok=True)

        logger.info(
            f"Produced {kind.value} artifact {artifact_id} ({size_bytes} bytes)",
            extra={"artifact_id": artifact_id, "cycle_id": cycle_id},
        )
        return artifact

    async def backup_full(self, cycle_id: str | None = None) -> BackupArtifact:
        """Produce a full database snapshot."""
        if self.database is None:
            raise ConfigurationError("No database configured", missing=["database_path"])
        database = self.database

        async def write(path: Path) -> dict[str, Any]:
            info = await database.dump_full(path)
            return {"source_version": info.source_version, "expected_rows": info.expected_rows}

        return await self._produce(
            ArtifactKind.FULL, database.payload_format, database.source_system, write, cycle_id
        )

    async def backup_incremental(self, cycle_id: str | None = None) -> BackupArtifact | None:
        """
        Archive WAL segments produced since the high-water mark.

        The cursor only advances after the artifact is stored and catalogued,
        so a failed sweep is collected again by the next one.

        Returns:
            The new artifact, or None when no new segment exists
        """
        if self.settings.wal_archive_dir is None:
            raise ConfigurationError("No WAL archive configured", missing=["wal_archive_dir"])

        wal_archive = WalArchive(self.settings.wal_archive_dir)
        cursor = self.catalog.get_wal_cursor()
        segments = wal_archive.list_segments(after=cursor)
        if not segments:
            logger.info(f"No WAL segments after {cursor}")
            return None

        async def write(path: Path) -> dict[str, Any]:
            WalArchive.bundle(segments, path)
            return {"wal_segments": [segment.name for segment in segments]}

        source_system = self.database.source_system if self.database else "wal-archive"
        artifact = await self._produce(
            ArtifactKind.INCREMENTAL, PayloadFormat.TAR_GZ, source_system, write, cycle_id
        )
        self.catalog.advance_wal_cursor(segments[-1].name, artifact.artifact_id)
        logger.info(f"WAL cursor advanced to {segments[-1].name} ({len(segments)} segments)")
        return artifact

    async def backup_files(self, cycle_id: str | None = None) -> BackupArtifact:
        """Produce a tar.gz snapshot of the file store."""
        if self.file_store is None:
            raise ConfigurationError("No file store configured", missing=["file_store_path"])
        file_store = self.file_store

        async def write(path: Path) -> dict[str, Any]:
            return {"file_count": await file_store.snapshot(path)}

        return await self._produce(
            ArtifactKind.FILE_SNAPSHOT, PayloadFormat.TAR_GZ, file_store.source_system, write, cycle_id
        )

    async def verify_artifact(self, artifact: BackupArtifact) -> VerificationReport:
        """
        Run the integrity gate on a ``created`` artifact.

        A payload failing any check is moved under ``quarantine/`` and the
        artifact is marked ``failed``; it is never replicated afterwards.
        """
        local_copy = self.staging_path / f"verify-{artifact.artifact_id}"
        try:
            try:
                await self._with_retry(
                    self.primary.get, artifact.storage_key, local_copy, operation="payload download"
                )
                report = await self.verifier.verify_payload(
                    artifact.artifact_id, local_copy, artifact.checksum, artifact.payload_format
                )
            except FileNotFoundError as e:
                report = VerificationReport(
                    artifact.artifact_id,
                    VerificationOutcome.CORRUPTION_DETECTED,
                    [IntegrityCheck("file_existence", CheckResult.FAILED, str(e))],
                )

            if report.verified:
                self.catalog.transition(
                    artifact.artifact_id, ArtifactStatus.CREATED, ArtifactStatus.VERIFIED, self.clock()
                )
                return report

            quarantine_key = await self._quarantine(artifact, local_copy)
            self.catalog.transition(
                artifact.artifact_id, ArtifactStatus.CREATED, ArtifactStatus.FAILED, self.clock(),
                storage_key=quarantine_key,
                error_message="; ".join(check.message for check in report.failed_checks),
            )
            return report
        finally:
            local_copy.unlink(missing_ok=True)

    async def _quarantine(self, artifact: BackupArtifact, local_copy: Path) -> str:
        """Move a corrupt payload out of the artifact namespace."""
        quarantine_key = QUARANTINE_PREFIX + artifact.storage_key[len(ARTIFACT_PREFIX):]
        if not local_copy.exists():
            logger.error(f"Artifact {artifact.artifact_id} has no payload to quarantine")
            return artifact.storage_key

        info = await self.primary.stat(artifact.storage_key)
        metadata = dict(info.metadata) if info else {}
        metadata["quarantined-at"] = self.clock().isoformat()
        await self.primary.put(quarantine_key, local_copy, self.settings.storage_class, metadata)
        await self.primary.delete(artifact.storage_key)
        logger.error(
            f"Artifact {artifact.artifact_id} quarantined at {quarantine_key}",
            extra={"artifact_id": artifact.artifact_id},
        )
        return quarantine_key

    def pending_verification(self) -> list[BackupArtifact]:
        return self.catalog.list_artifacts(statuses={ArtifactStatus.CREATED})
