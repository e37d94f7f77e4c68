"""
Backup and Disaster Recovery Orchestrator

Wires the producer, verifier, validator, replication and retention managers
together and runs one cycle per triggered job type. Stages run sequentially;
each one yields a StepResult, and every cycle ends with exactly one
notification carrying the overall severity and the itemized failures.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from drvault.backup.backup_manager import BackupManager, Clock, utcnow
from drvault.backup.catalog import ArtifactCatalog
from drvault.backup.collaborators import (
    DatabaseCollaborator,
    FileStoreCollaborator,
    create_database,
    create_file_store,
)
from drvault.backup.notifications import NotificationDispatcher, create_dispatcher
from drvault.backup.replication import ReplicationManager
from drvault.backup.retention import RetentionManager
from drvault.backup.storage_backends import StorageBackend, backend_for_region, create_storage_backend
from drvault.backup.validation import RestoreValidator
from drvault.config import BackupSettings
from drvault.exceptions import BackupError, CapacityError, ConfigurationError, ConsistencyDrift, IntegrityError
from drvault.logging import get_logger, get_logger_with_context
from drvault.models import (
    ArtifactKind,
    BackupArtifact,
    CycleResult,
    CycleState,
    JobType,
    Severity,
    StepResult,
    SyncStatus,
)

logger = get_logger(__name__)

Stage = Callable[[CycleResult], Awaitable[StepResult]]


class BackupOrchestrator:
    """
    Master orchestrator for backup and disaster recovery cycles.

    Collaborators default to the ones described by the settings; tests and
    embedders can pass their own.
    """

    def __init__(
        self,
        settings: BackupSettings,
        primary: StorageBackend | None = None,
        secondaries: list[StorageBackend] | None = None,
        database: DatabaseCollaborator | None = None,
        file_store: FileStoreCollaborator | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings
        self.clock = clock
        self.catalog = ArtifactCatalog(settings.catalog_path)

        self.primary = primary or create_storage_backend(
            settings.primary_backend, settings.primary_region, settings.primary_store_config()
        )
        self.secondaries = (
            secondaries if secondaries is not None
            else [backend_for_region(region) for region in settings.secondary_regions]
        )
        if database is None and (settings.database_path or settings.database_url):
            database = create_database(settings)
        self.database = database
        self.file_store = file_store if file_store is not None else create_file_store(settings)
        self.dispatcher = dispatcher or create_dispatcher(settings)

        self.backup_manager = BackupManager(
            settings, self.catalog, self.primary, self.database, self.file_store, clock=clock
        )
        self.validator = RestoreValidator(
            settings, self.catalog, self.primary, self.database, self.file_store, self.secondaries, clock
        )
        self.replication = ReplicationManager(settings, self.catalog, self.primary, self.secondaries, clock)
        self.retention = RetentionManager(settings, self.catalog, self.primary, self.secondaries, clock)

        self.stop_event = asyncio.Event()

        logger.info("Backup orchestrator initialized")

    def request_stop(self) -> None:
        """Finish the running stage, then end the cycle."""
        self.stop_event.set()

    def new_cycle_id(self, job_type: JobType) -> str:
        return f"{job_type.value}-{self.clock().strftime('%Y%m%dT%H%M%SZ')}-{uuid.uuid4().hex[:6]}"

    def _pipeline(self, job_type: JobType, sample_size: int | None) -> list[tuple[str, Stage]]:
        """Ordered stages of a job type."""
        def produce(kind: ArtifactKind) -> Stage:
            return lambda result: self._stage_produce(result, kind)

        def validate(pitr: bool) -> Stage:
            return lambda result: self._stage_validate(result, sample_size, pitr)

        if job_type == JobType.FULL_BACKUP:
            stages: list[tuple[str, Stage]] = [("produce-full", produce(ArtifactKind.FULL))]
            if self.file_store is not None:
                stages.append(("produce-file-snapshot", produce(ArtifactKind.FILE_SNAPSHOT)))
            return stages + [
                ("verify", self._stage_verify),
                ("validate-sample", validate(False)),
                ("replicate", self._stage_replicate),
                ("reconcile", self._stage_reconcile),
                ("retain", self._stage_retain),
            ]
        if job_type == JobType.INCREMENTAL_SWEEP:
            return [
                ("produce-incremental", produce(ArtifactKind.INCREMENTAL)),
                ("verify", self._stage_verify),
                ("replicate", self._stage_replicate),
            ]
        if job_type == JobType.FILE_SNAPSHOT:
            return [
                ("produce-file-snapshot", produce(ArtifactKind.FILE_SNAPSHOT)),
                ("verify", self._stage_verify),
                ("replicate", self._stage_replicate),
            ]
        if job_type == JobType.VALIDATION:
            return [("validate", validate(True))]
        if job_type == JobType.REGION_SYNC:
            return [
                ("replicate", self._stage_replicate),
                ("reconcile", self._stage_reconcile),
            ]
        return [("retain", self._stage_retain)]

    async def run_cycle(
        self,
        job_type: JobType,
        sample_size: int | None = None,
        cycle_id: str | None = None,
    ) -> CycleResult:
        """
        Run every stage of ``job_type`` and report the outcome.

        Configuration problems stop the cycle before any stage runs. An error
        escaping a stage ends the cycle; artifacts keep the last status they
        reached and earlier stages are not rolled back.

        Args:
            job_type: Job to run
            sample_size: Restore-test sample size (default from settings)
            cycle_id: Explicit cycle identifier

        Returns:
            Aggregated cycle result
        """
        cycle_id = cycle_id or self.new_cycle_id(job_type)
        result = CycleResult(cycle_id=cycle_id, job_type=job_type, started_at=self.clock())
        log = get_logger_with_context(__name__, cycle_id=cycle_id, job_type=job_type.value)
        log.info(f"Starting {job_type.value} cycle {cycle_id}")

        deadline = time.monotonic() + self.settings.cycle_budget_seconds
        try:
            self.settings.validate_required(job_type)
        except ConfigurationError as e:
            result.add(StepResult.failure("configuration", e.message, items=e.details.get("missing", [])))
            return await self._finish(result, log)

        for name, stage in self._pipeline(job_type, sample_size):
            if self.stop_event.is_set():
                result.add(StepResult.failure(name, "Shutdown requested before stage started", Severity.WARNING))
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                result.add(StepResult.failure(name, "Cycle time budget exhausted before stage started"))
                break

            log.info(f"Stage {name} started")
            try:
                step = await asyncio.wait_for(stage(result), timeout=remaining)
            except asyncio.TimeoutError:
                result.add(StepResult.failure(name, "Cycle time budget exhausted during stage"))
                break
            except IntegrityError as e:
                log.error(f"Stage {name} found a corrupt payload: {e}")
                result.add(StepResult.failure(name, e.message, Severity.CRITICAL, **e.to_dict()))
                break
            except (CapacityError, ConfigurationError) as e:
                log.error(f"Stage {name} hit a fatal error: {e}")
                result.add(StepResult.failure(name, e.message, **e.to_dict()))
                break
            except BackupError as e:
                log.error(f"Stage {name} failed: {e}")
                result.add(StepResult.failure(name, e.message, **e.to_dict()))
                break
            except OSError as e:
                log.error(f"Stage {name} failed with an I/O error: {e}")
                result.add(StepResult.failure(name, str(e), error=type(e).__name__))
                break
            except Exception as e:
                log.error(f"Stage {name} failed unexpectedly: {e}", exc_info=True)
                result.add(StepResult.failure(name, f"Unexpected error: {e}", error=type(e).__name__))
                break

            step.name = name
            result.add(step)
            log.info(f"Stage {name} finished: {step.severity.value}")

        return await self._finish(result, log)

    async def _finish(self, result: CycleResult, log: Any) -> CycleResult:
        result.finished_at = self.clock()
        failed = any(step.severity.rank >= Severity.FAILED.rank for step in result.steps)
        result.state = CycleState.FAILED if failed else CycleState.COMPLETED
        self.catalog.record_cycle(result)

        items = []
        for step in result.failed_steps:
            items.append(f"{step.name}: {step.detail}")
            items.extend(f"{step.name}: {item}" for item in step.items)

        summary = (
            f"{result.job_type.value} cycle {result.cycle_id} {result.state.value} "
            f"({len(result.steps) - len(result.failed_steps)}/{len(result.steps)} steps ok)"
        )
        await self.dispatcher.notify(
            result.severity, summary,
            detail={"cycle_id": result.cycle_id, "artifact_ids": result.artifact_ids},
            items=items,
        )
        log.info(f"Cycle {result.cycle_id} finished: {result.state.value} ({result.severity.value})")
        return result

    # Stages

    async def _stage_produce(self, result: CycleResult, kind: ArtifactKind) -> StepResult:
        artifact: BackupArtifact | None
        if kind == ArtifactKind.FULL:
            artifact = await self.backup_manager.backup_full(result.cycle_id)
        elif kind == ArtifactKind.INCREMENTAL:
            artifact = await self.backup_manager.backup_incremental(result.cycle_id)
        else:
            artifact = await self.backup_manager.backup_files(result.cycle_id)

        if artifact is None:
            return StepResult.success("produce", "No new WAL segments to archive")
        result.artifact_ids.append(artifact.artifact_id)
        return StepResult.success(
            "produce", f"Produced {artifact.artifact_id}",
            artifact_id=artifact.artifact_id, size_bytes=artifact.size_bytes,
        )

    async def _stage_verify(self, result: CycleResult) -> StepResult:
        pending = self.backup_manager.pending_verification()
        verified, items = [], []
        severity = Severity.SUCCESS
        for artifact in pending:
            try:
                report = await self.backup_manager.verify_artifact(artifact)
            except BackupError as e:
                items.append(f"{artifact.artifact_id}: verification could not run: {e.message}")
                severity = Severity.worst([severity, Severity.FAILED])
                continue
            if report.verified:
                verified.append(artifact.artifact_id)
            else:
                items.append(f"{artifact.artifact_id}: corruption detected, quarantined")
                severity = Severity.CRITICAL

        if items:
            return StepResult.failure(
                "verify", f"{len(items)} of {len(pending)} artifacts failed verification",
                severity, items, verified=verified,
            )
        return StepResult.success("verify", f"{len(verified)} artifacts verified", verified=verified)

    async def _stage_validate(self, result: CycleResult, sample_size: int | None, pitr: bool) -> StepResult:
        summary = await self.validator.run(result.cycle_id, sample_size, pitr=pitr)
        items = [
            f"{run.artifact_id}: restore test failed ({run.detail.get('error', 'sanity check mismatch')})"
            for run in summary.failed_runs
        ]
        severities = [summary.severity]
        if not summary.runs:
            items.append("no verified artifact available to sample")
        if summary.pitr_run is not None and not summary.pitr_run.passed:
            items.append(f"pitr-probe: {summary.pitr_run.detail.get('error', 'failed')}")
            severities.append(Severity.FAILED)
        for region_id, status in summary.region_status.items():
            if status != "ok":
                items.append(f"region {region_id} not accessible: {status}")
                severities.append(Severity.WARNING)

        severity = Severity.worst(severities)
        data = {"score": summary.score, "report": str(summary.report_path) if summary.report_path else None}
        detail = f"Validation score {summary.score:.0f}% over {len(summary.runs)} samples"
        if severity == Severity.SUCCESS:
            return StepResult.success("validate", detail, **data)
        return StepResult.failure("validate", detail, severity, items, **data)

    async def _stage_replicate(self, result: CycleResult) -> StepResult:
        outcomes = await self.replication.replicate_pending()
        items = [
            f"{outcome.artifact_id}: replication to {region_id} failed: {error}"
            for outcome in outcomes
            for region_id, error in sorted(outcome.failed.items())
        ]
        data = {"outcomes": [outcome.to_dict() for outcome in outcomes]}
        if not items:
            return StepResult.success("replicate", f"{len(outcomes)} artifacts replicated", **data)

        stranded = [outcome.artifact_id for outcome in outcomes if not outcome.replicated]
        severity = Severity.FAILED if stranded else Severity.WARNING
        return StepResult.failure(
            "replicate",
            f"{len(items)} region copies failed; {len(stranded)} artifacts not replicated anywhere",
            severity, items, **data,
        )

    async def _stage_reconcile(self, result: CycleResult) -> StepResult:
        report = await self.replication.reconcile(result.cycle_id)
        upload_failures = await self.replication.publish_report(report)

        if report.status == SyncStatus.DRIFTED and self.settings.auto_resync_on_drift:
            copied = await self.replication.resync(report)
            logger.info(f"Re-synced {sum(len(keys) for keys in copied.values())} objects after drift")
            report = await self.replication.reconcile(f"{result.cycle_id}-resync")
            upload_failures += await self.replication.publish_report(report)

        items = [f"sync report upload to {region_id} failed" for region_id in upload_failures]
        data = {"sync_report": report.to_dict()}
        if report.status == SyncStatus.DRIFTED:
            items = [f"drifted artifact {artifact_id}" for artifact_id in report.mismatched_artifact_ids] + [
                f"region {stats.region_id}: {stats.error}" for stats in report.regions if stats.error
            ] + items
            drift = ConsistencyDrift(
                f"Regions drifted: {len(report.mismatched_artifact_ids)} mismatched artifacts; "
                f"operator acknowledgement required (ack-drift {report.cycle_id})",
                mismatched_ids=list(report.mismatched_artifact_ids),
            )
            return StepResult.failure("reconcile", drift.message, Severity.WARNING, items, **data, **drift.to_dict())
        if items:
            return StepResult.failure("reconcile", "Regions consistent; report upload incomplete",
                                      Severity.WARNING, items, **data)
        return StepResult.success("reconcile", f"Regions consistent ({report.primary_count} objects)", **data)

    async def _stage_retain(self, result: CycleResult) -> StepResult:
        expired = await self.retention.apply_policies()
        data = expired.to_dict()
        if expired.residual:
            items = [
                f"{artifact_id}: residual copy in {', '.join(destinations)}"
                for artifact_id, destinations in sorted(expired.residual.items())
            ]
            return StepResult.failure(
                "retain", f"{len(expired.expired)} expired; deletion incomplete for {len(items)}",
                Severity.WARNING, items, **data,
            )
        return StepResult.success("retain", f"{len(expired.expired)} artifacts expired", **data)

    # Operator commands

    async def rebuild_catalog(self, overwrite: bool = False) -> dict[str, int]:
        return await self.catalog.rebuild(self.primary, self.secondaries, overwrite=overwrite)

    def acknowledge_drift(self, cycle_id: str, operator: str, note: str = "") -> dict[str, Any]:
        return self.replication.acknowledge_drift(cycle_id, operator, note)

    def status(self) -> dict[str, Any]:
        status = self.catalog.summary()
        status["primary"] = {"region": self.primary.region, "location": self.primary.location}
        status["secondaries"] = [
            {"region": backend.region, "location": backend.location} for backend in self.secondaries
        ]
        return status
