"""
Backup Restore-Test Validation

Restores a sample of recent verified artifacts into throwaway sandboxes,
runs sanity counts, and scores the cycle. A point-in-time-recovery probe
checks that continuous archiving is advancing and that a named restore
point can be created.
"""
from __future__ import annotations

import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from drvault.backup.backup_manager import Clock, utcnow
from drvault.backup.catalog import ArtifactCatalog
from drvault.backup.collaborators import (
    SANDBOX_PREFIX,
    DatabaseCollaborator,
    FileStoreCollaborator,
    RestoreTarget,
)
from drvault.backup.storage_backends import StorageBackend
from drvault.config import BackupSettings
from drvault.exceptions import BackupError, ConfigurationError, with_timeout
from drvault.logging import get_logger
from drvault.models import (
    ArtifactKind,
    ArtifactStatus,
    BackupArtifact,
    Severity,
    ValidationKind,
    ValidationOutcome,
    ValidationRun,
)

logger = get_logger(__name__)

FILE_SAMPLE_SIZE = 5

WARNING_THRESHOLD = 80.0


def score_runs(runs: list[ValidationRun]) -> float:
    """Percentage of passing runs."""
    if not runs:
        return 0.0
    return sum(1 for run in runs if run.passed) / len(runs) * 100


def severity_for_score(score: float) -> Severity:
    """100 is success, [80, 100) is a warning, anything lower failed."""
    if score >= 100.0:
        return Severity.SUCCESS
    if score >= WARNING_THRESHOLD:
        return Severity.WARNING
    return Severity.FAILED


@dataclass
class ValidationSummary:
    """Everything one validation cycle found."""
    cycle_id: str
    runs: list[ValidationRun] = field(default_factory=list)
    skipped_artifact_ids: list[str] = field(default_factory=list)
    pitr_run: ValidationRun | None = None
    region_status: dict[str, str] = field(default_factory=dict)
    cleaned_sandboxes: list[str] = field(default_factory=list)
    report_path: Path | None = None

    @property
    def score(self) -> float:
        return score_runs(self.runs)

    @property
    def severity(self) -> Severity:
        if not self.runs:
            return Severity.WARNING
        return severity_for_score(self.score)

    @property
    def failed_runs(self) -> list[ValidationRun]:
        return [run for run in self.runs if not run.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            'cycle_id': self.cycle_id,
            'score': self.score,
            'severity': self.severity.value,
            'runs': [run.to_dict() for run in self.runs],
            'skipped_artifact_ids': self.skipped_artifact_ids,
            'pitr': self.pitr_run.to_dict() if self.pitr_run else None,
            'region_status': self.region_status,
            'cleaned_sandboxes': self.cleaned_sandboxes,
        }


class RestoreValidator:
    """
    Restore-test validator.

    Each sampled artifact is leased for the duration of its restore so that
    retention cannot delete it mid-sample.
    """

    def __init__(
        self,
        settings: BackupSettings,
        catalog: ArtifactCatalog,
        primary: StorageBackend,
        database: DatabaseCollaborator | None = None,
        file_store: FileStoreCollaborator | None = None,
        secondaries: list[StorageBackend] | None = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.catalog = catalog
        self.primary = primary
        self.database = database
        self.file_store = file_store
        self.secondaries = secondaries or []
        self.clock = clock
        self.files_sandbox_dir = settings.sandbox_path / "files"

    def select_samples(self, sample_size: int) -> list[BackupArtifact]:
        """Most recent ``sample_size`` restorable artifacts that passed verification."""
        candidates = [
            artifact for artifact in self.catalog.list_artifacts(
                statuses={ArtifactStatus.VERIFIED, ArtifactStatus.REPLICATED}
            )
            if (artifact.kind == ArtifactKind.FULL and self.database is not None)
            or (artifact.kind == ArtifactKind.FILE_SNAPSHOT and self.file_store is not None)
        ]
        candidates.sort(key=lambda a: a.created_at, reverse=True)
        return candidates[:max(sample_size, 0)]

    def _sandbox_name(self) -> str:
        return f"{SANDBOX_PREFIX}{self.clock().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"

    async def cleanup_orphan_sandboxes(self) -> list[str]:
        """Drop sandboxes left behind by crashed validation runs."""
        cleaned = []
        if self.database is not None:
            for target in await self.database.list_sandboxes():
                await self.database.drop_sandbox(target)
                cleaned.append(target.name)
        if self.files_sandbox_dir.exists():
            for path in self.files_sandbox_dir.glob(f"{SANDBOX_PREFIX}*"):
                shutil.rmtree(path, ignore_errors=True)
                cleaned.append(path.name)
        if cleaned:
            logger.warning(f"Removed {len(cleaned)} orphaned sandboxes: {', '.join(cleaned)}")
        return cleaned

    async def validate_artifact(self, artifact: BackupArtifact, cycle_id: str) -> ValidationRun | None:
        """
        Restore one artifact into a sandbox and check it.

        Returns:
            The recorded run, or None when the artifact is leased by someone else
        """
        holder = f"validation:{cycle_id}"
        ttl = self.settings.operation_timeout_seconds * 2
        if not self.catalog.acquire_lease(artifact.artifact_id, holder, ttl, self.clock()):
            return None

        # Status may have moved since sampling
        current = self.catalog.get(artifact.artifact_id)
        if current is None or current.status not in (ArtifactStatus.VERIFIED, ArtifactStatus.REPLICATED):
            self.catalog.release_lease(artifact.artifact_id, holder)
            return None

        kind = (
            ValidationKind.RESTORE_DATABASE if artifact.kind == ArtifactKind.FULL
            else ValidationKind.RESTORE_FILES
        )
        sandbox_name = self._sandbox_name()
        local_copy = self.settings.staging_path / f"restore-{artifact.artifact_id}"
        target: RestoreTarget | None = None
        detail: dict[str, Any] = {"sandbox": sandbox_name}
        passed = False

        logger.info(f"Restore-testing {artifact.artifact_id} in {sandbox_name}")
        try:
            await with_timeout(
                self.primary.get(artifact.storage_key, local_copy),
                self.settings.operation_timeout_seconds, "payload download",
            )
            if kind == ValidationKind.RESTORE_DATABASE:
                target, passed = await self._restore_database(artifact, local_copy, sandbox_name, detail)
            else:
                target, passed = await self._restore_files(artifact, local_copy, sandbox_name, detail)
        except (BackupError, OSError) as e:
            detail["error"] = str(e)
            logger.error(f"Restore test of {artifact.artifact_id} failed: {e}")
        finally:
            await self._teardown(kind, sandbox_name, target)
            local_copy.unlink(missing_ok=True)
            self.catalog.release_lease(artifact.artifact_id, holder)

        run = ValidationRun(
            run_id=f"{cycle_id}-{artifact.artifact_id}",
            artifact_id=artifact.artifact_id,
            tested_at=self.clock(),
            kind=kind,
            outcome=ValidationOutcome.PASS if passed else ValidationOutcome.FAIL,
            detail=detail,
            cycle_id=cycle_id,
        )
        self.catalog.append_validation_run(run)
        logger.info(f"Restore test of {artifact.artifact_id}: {run.outcome.value}")
        return run

    async def _restore_database(
        self,
        artifact: BackupArtifact,
        payload: Path,
        sandbox_name: str,
        detail: dict[str, Any],
    ) -> tuple[RestoreTarget, bool]:
        if self.database is None:
            raise ConfigurationError("No database configured", missing=["database_path"])
        target = await with_timeout(
            self.database.restore(payload, sandbox_name),
            self.settings.operation_timeout_seconds, "database restore",
        )
        counts = await self.database.table_counts(target)
        detail["table_count"] = len(counts)
        detail["row_counts"] = counts

        mismatches = {
            table: {"expected": expected, "restored": counts.get(table)}
            for table, expected in artifact.expected_rows.items()
            if counts.get(table) != expected
        }
        if mismatches:
            detail["row_mismatches"] = mismatches
        return target, bool(counts) and not mismatches

    async def _restore_files(
        self,
        artifact: BackupArtifact,
        payload: Path,
        sandbox_name: str,
        detail: dict[str, Any],
    ) -> tuple[RestoreTarget, bool]:
        if self.file_store is None:
            raise ConfigurationError("No file store configured", missing=["file_store_path"])
        target = await with_timeout(
            self.file_store.restore(payload, self.files_sandbox_dir / sandbox_name),
            self.settings.operation_timeout_seconds, "file restore",
        )
        files = sorted(path for path in Path(target.location).rglob("*") if path.is_file())
        unreadable = []
        for path in files[:FILE_SAMPLE_SIZE]:
            try:
                with open(path, "rb") as f:
                    f.read(1024)
            except OSError:
                unreadable.append(path.name)

        detail["file_count"] = len(files)
        detail["sampled_files"] = min(len(files), FILE_SAMPLE_SIZE)
        if unreadable:
            detail["unreadable"] = unreadable
        expected = artifact.file_count
        if expected is not None and expected != len(files):
            detail["expected_file_count"] = expected
            return target, False
        return target, not unreadable

    async def _teardown(self, kind: ValidationKind, sandbox_name: str, target: RestoreTarget | None) -> None:
        try:
            if kind == ValidationKind.RESTORE_DATABASE and self.database is not None:
                await self.database.drop_sandbox(target or RestoreTarget(sandbox_name, ""))
            else:
                shutil.rmtree(self.files_sandbox_dir / sandbox_name, ignore_errors=True)
        except (BackupError, OSError) as e:
            # Left for the next cycle's orphan cleanup
            logger.warning(f"Could not tear down sandbox {sandbox_name}: {e}")

    async def pitr_probe(self, cycle_id: str) -> ValidationRun:
        """Check that archiving advances and that a restore point can be created."""
        if self.database is None:
            raise ConfigurationError("No database configured", missing=["database_path"])
        now = self.clock()
        detail: dict[str, Any] = {}
        passed = False
        try:
            status = await with_timeout(
                self.database.archive_status(), self.settings.operation_timeout_seconds, "archive status"
            )
            previous = self.catalog.get_archive_counter()
            detail.update(status.to_dict())
            detail["previous_archived_count"] = previous
            self.catalog.set_archive_counter(status.archived_count)

            advancing = status.archived_count > 0 and (
                previous is None or status.archived_count > previous
            )
            if status.failed_count > 0:
                detail["warning"] = f"{status.failed_count} WAL segments failed to archive"
                logger.warning(f"Archiver reports {status.failed_count} failed segments")

            label = f"{SANDBOX_PREFIX}{now.strftime('%Y%m%d_%H%M%S')}"
            detail["restore_point"] = await self.database.create_restore_point(label)
            passed = advancing
            if not advancing:
                detail["error"] = "Continuous archiving counter is not increasing"
        except BackupError as e:
            detail["error"] = str(e)
            logger.error(f"PITR probe failed: {e}")

        run = ValidationRun(
            run_id=f"{cycle_id}-pitr",
            artifact_id=f"source:{self.database.source_system}",
            tested_at=now,
            kind=ValidationKind.PITR_PROBE,
            outcome=ValidationOutcome.PASS if passed else ValidationOutcome.FAIL,
            detail=detail,
            cycle_id=cycle_id,
        )
        self.catalog.append_validation_run(run)
        return run

    async def check_regions(self) -> dict[str, str]:
        """List every secondary region once; ``ok`` or the error message."""
        status = {}
        for backend in self.secondaries:
            try:
                await with_timeout(
                    backend.list_objects("artifacts/"),
                    self.settings.operation_timeout_seconds, f"list {backend.backend_id}",
                )
                status[backend.backend_id] = "ok"
            except (BackupError, OSError) as e:
                status[backend.backend_id] = str(e)
                logger.warning(f"Region {backend.backend_id} is not accessible: {e}")
        return status

    async def run(self, cycle_id: str, sample_size: int | None = None, pitr: bool = True) -> ValidationSummary:
        """
        Run a complete validation cycle.

        Args:
            cycle_id: Cycle identifier
            sample_size: Artifacts to restore (default from settings)
            pitr: Also run the point-in-time-recovery probe

        Returns:
            Summary with runs, score and severity
        """
        sample_size = self.settings.validation_sample_size if sample_size is None else sample_size
        summary = ValidationSummary(cycle_id=cycle_id)
        summary.cleaned_sandboxes = await self.cleanup_orphan_sandboxes()

        for artifact in self.select_samples(sample_size):
            run = await self.validate_artifact(artifact, cycle_id)
            if run is None:
                summary.skipped_artifact_ids.append(artifact.artifact_id)
            else:
                summary.runs.append(run)

        if pitr and self.database is not None and self._pitr_supported():
            summary.pitr_run = await self.pitr_probe(cycle_id)

        summary.region_status = await self.check_regions()
        summary.report_path = await self._write_report(summary)

        logger.info(
            f"Validation {cycle_id}: {len(summary.runs)} samples, score {summary.score:.0f} "
            f"({summary.severity.value})"
        )
        return summary

    def _pitr_supported(self) -> bool:
        return self.settings.wal_archive_dir is not None or self.settings.database_url is not None

    async def _write_report(self, summary: ValidationSummary) -> Path:
        by_kind: dict[str, int] = {}
        for artifact in self.catalog.list_artifacts():
            if artifact.status != ArtifactStatus.EXPIRED:
                by_kind[artifact.kind.value] = by_kind.get(artifact.kind.value, 0) + 1

        report = summary.to_dict()
        report["generated_at"] = self.clock().isoformat()
        report["artifact_counts"] = by_kind
        path = self.catalog.save_report("validation", summary.cycle_id, report)

        try:
            await self.primary.put(
                f"reports/validation/{path.name}", path, None,
                {"cycle-id": summary.cycle_id, "report-date": self.clock().strftime("%Y-%m-%d")},
            )
        except (BackupError, OSError) as e:
            logger.warning(f"Could not upload validation report {path.name}: {e}")
        return path
