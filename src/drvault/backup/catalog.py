"""
Artifact Catalog

Human-readable JSON metadata store shared by every job type: one document per
artifact, the WAL high-water-mark cursor, the archive counter, append-only
validation runs and sync reports, and artifact leases. Status changes are
compare-and-set under an exclusive file lock. The catalog is a cache over the
primary store and can be rebuilt from it.
"""
from __future__ import annotations

import fcntl
import json
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from drvault.exceptions import InvalidTransition
from drvault.logging import get_logger
from drvault.models import (
    ArtifactKind,
    ArtifactStatus,
    BackupArtifact,
    CycleResult,
    JobType,
    RegionRef,
    SyncReport,
    ValidationRun,
    can_transition,
)

logger = get_logger(__name__)

ARTIFACT_PREFIX = "artifacts/"
QUARANTINE_PREFIX = "quarantine/"


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def _write_json_exclusive(path: Path, data: Any) -> None:
    """Create ``path``; raises FileExistsError when a record already exists."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)


def _read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


class ArtifactCatalog:
    """File-backed catalog of artifacts and cycle records."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.artifacts_dir = self.root / "artifacts"
        self.validation_runs_dir = self.root / "validation_runs"
        self.sync_reports_dir = self.root / "sync_reports"
        self.leases_dir = self.root / "leases"
        self.cycles_dir = self.root / "cycles"
        self.reports_dir = self.root / "reports"
        self.state_dir = self.root / "state"
        self._ensure_structure()

    def _ensure_structure(self) -> None:
        for directory in (
            self.artifacts_dir, self.validation_runs_dir, self.sync_reports_dir,
            self.leases_dir, self.cycles_dir, self.reports_dir, self.state_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Exclusive lock serializing read-modify-write across processes."""
        with open(self.root / ".catalog.lock", "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _artifact_path(self, artifact_id: str) -> Path:
        return self.artifacts_dir / f"{artifact_id}.json"

    # Artifacts

    def add(self, artifact: BackupArtifact) -> BackupArtifact:
        """Record a new artifact. Artifact ids are never reused."""
        with self._locked():
            _write_json_exclusive(self._artifact_path(artifact.artifact_id), artifact.to_dict())
        logger.debug(f"Catalogued artifact {artifact.artifact_id}")
        return artifact

    def get(self, artifact_id: str) -> BackupArtifact | None:
        path = self._artifact_path(artifact_id)
        if not path.exists():
            return None
        return BackupArtifact.from_dict(_read_json(path))

    def list_artifacts(
        self,
        kind: ArtifactKind | None = None,
        statuses: set[ArtifactStatus] | None = None,
    ) -> list[BackupArtifact]:
        """Artifacts sorted oldest first."""
        artifacts = []
        for path in self.artifacts_dir.glob("*.json"):
            artifact = BackupArtifact.from_dict(_read_json(path))
            if kind and artifact.kind != kind:
                continue
            if statuses and artifact.status not in statuses:
                continue
            artifacts.append(artifact)
        artifacts.sort(key=lambda a: (a.created_at, a.artifact_id))
        return artifacts

    def transition(
        self,
        artifact_id: str,
        expected: ArtifactStatus,
        target: ArtifactStatus,
        now: datetime | None = None,
        **changes: Any
    ) -> BackupArtifact:
        """
        Compare-and-set the status of an artifact.

        Args:
            artifact_id: Artifact to update
            expected: Status the caller last observed
            target: New status
            now: Transition timestamp
            **changes: Other artifact fields to set in the same write

        Raises:
            InvalidTransition: if the stored status differs from ``expected``
                or the transition is not allowed
        """
        now = now or datetime.now(timezone.utc)
        with self._locked():
            artifact = self.get(artifact_id)
            if artifact is None:
                raise InvalidTransition(f"Unknown artifact {artifact_id}")
            if artifact.status != expected:
                raise InvalidTransition(
                    f"Artifact {artifact_id} is {artifact.status.value}, expected {expected.value}",
                    details={"artifact_id": artifact_id, "actual": artifact.status.value},
                )
            if not can_transition(artifact.status, target):
                raise InvalidTransition(
                    f"Artifact {artifact_id} cannot move from {artifact.status.value} to {target.value}",
                    details={"artifact_id": artifact_id},
                )

            for name, value in changes.items():
                setattr(artifact, name, value)
            artifact.status = target
            artifact.status_history.append({"status": target.value, "at": now.isoformat()})
            artifact.revision += 1
            _write_json_atomic(self._artifact_path(artifact_id), artifact.to_dict())

        logger.info(f"Artifact {artifact_id}: {expected.value} -> {target.value}")
        return artifact

    def update(self, artifact_id: str, expected_revision: int, **changes: Any) -> BackupArtifact:
        """Update non-status fields if nobody else wrote the document since ``expected_revision``."""
        if "status" in changes:
            raise ValueError("Use transition() to change status")
        with self._locked():
            artifact = self.get(artifact_id)
            if artifact is None:
                raise InvalidTransition(f"Unknown artifact {artifact_id}")
            if artifact.revision != expected_revision:
                raise InvalidTransition(
                    f"Artifact {artifact_id} changed concurrently "
                    f"(revision {artifact.revision}, expected {expected_revision})"
                )
            for name, value in changes.items():
                setattr(artifact, name, value)
            artifact.revision += 1
            _write_json_atomic(self._artifact_path(artifact_id), artifact.to_dict())
        return artifact

    # Leases

    def _lease_path(self, artifact_id: str) -> Path:
        return self.leases_dir / f"{artifact_id}.json"

    def acquire_lease(
        self,
        artifact_id: str,
        holder: str,
        ttl_seconds: float,
        now: datetime | None = None,
    ) -> bool:
        """
        Take an exclusive lease on an artifact.

        Validation holds a lease while restoring a sample and retention takes one
        before deleting, so neither can act on an artifact the other is using.
        Expired leases are taken over.
        """
        now = now or datetime.now(timezone.utc)
        path = self._lease_path(artifact_id)
        with self._locked():
            if path.exists():
                lease = _read_json(path)
                if datetime.fromisoformat(lease["expires_at"]) > now:
                    logger.info(f"Artifact {artifact_id} is leased by {lease['holder']}")
                    return False
                logger.warning(f"Taking over expired lease on {artifact_id} from {lease['holder']}")
            _write_json_atomic(path, {
                "artifact_id": artifact_id,
                "holder": holder,
                "acquired_at": now.isoformat(),
                "expires_at": (now + timedelta(seconds=ttl_seconds)).isoformat(),
            })
        return True

    def release_lease(self, artifact_id: str, holder: str) -> None:
        path = self._lease_path(artifact_id)
        with self._locked():
            if path.exists() and _read_json(path).get("holder") == holder:
                path.unlink()

    def active_leases(self, now: datetime | None = None) -> list[dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        leases = [_read_json(path) for path in sorted(self.leases_dir.glob("*.json"))]
        return [lease for lease in leases if datetime.fromisoformat(lease["expires_at"]) > now]

    # Incremental cursor and archive counter

    def get_wal_cursor(self) -> str | None:
        path = self.state_dir / "wal_cursor.json"
        if not path.exists():
            return None
        return _read_json(path)["last_archived_segment"]

    def advance_wal_cursor(self, segment: str, artifact_id: str) -> None:
        """Move the high-water mark forward. Never moves backwards."""
        with self._locked():
            current = self.get_wal_cursor()
            if current is not None and segment <= current:
                raise InvalidTransition(f"WAL cursor cannot move from {current} back to {segment}")
            _write_json_atomic(self.state_dir / "wal_cursor.json", {
                "last_archived_segment": segment,
                "artifact_id": artifact_id,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })

    def get_archive_counter(self) -> int | None:
        path = self.state_dir / "archive_counter.json"
        if not path.exists():
            return None
        return _read_json(path)["archived_count"]

    def set_archive_counter(self, archived_count: int) -> None:
        _write_json_atomic(self.state_dir / "archive_counter.json", {
            "archived_count": archived_count,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        })

    # Append-only records

    def append_validation_run(self, run: ValidationRun) -> None:
        _write_json_exclusive(self.validation_runs_dir / f"{run.run_id}.json", run.to_dict())

    def list_validation_runs(self, artifact_id: str | None = None) -> list[ValidationRun]:
        runs = [
            ValidationRun.from_dict(_read_json(path))
            for path in self.validation_runs_dir.glob("*.json")
        ]
        if artifact_id:
            runs = [run for run in runs if run.artifact_id == artifact_id]
        runs.sort(key=lambda run: (run.tested_at, run.run_id))
        return runs

    def save_sync_report(self, report: SyncReport) -> Path:
        path = self.sync_reports_dir / f"{report.cycle_id}.json"
        _write_json_exclusive(path, report.to_dict())
        return path

    def get_sync_report(self, cycle_id: str) -> SyncReport | None:
        path = self.sync_reports_dir / f"{cycle_id}.json"
        if not path.exists():
            return None
        return SyncReport.from_dict(_read_json(path))

    def list_sync_reports(self) -> list[SyncReport]:
        reports = [
            SyncReport.from_dict(_read_json(path))
            for path in self.sync_reports_dir.glob("*.json")
            if not path.name.endswith(".ack.json")
        ]
        reports.sort(key=lambda r: (r.created_at, r.cycle_id))
        return reports

    def acknowledge_drift(self, cycle_id: str, operator: str, note: str = "") -> dict[str, Any]:
        """Record operator acknowledgement next to an immutable sync report."""
        ack = {
            "cycle_id": cycle_id,
            "operator": operator,
            "note": note,
            "acknowledged_at": datetime.now(timezone.utc).isoformat(),
        }
        _write_json_exclusive(self.sync_reports_dir / f"{cycle_id}.ack.json", ack)
        return ack

    def get_acknowledgement(self, cycle_id: str) -> dict[str, Any] | None:
        path = self.sync_reports_dir / f"{cycle_id}.ack.json"
        return _read_json(path) if path.exists() else None

    def save_report(self, category: str, name: str, data: dict[str, Any]) -> Path:
        path = self.reports_dir / category / f"{name}.json"
        _write_json_exclusive(path, data)
        return path

    # Cycles

    def record_cycle(self, result: CycleResult) -> None:
        _write_json_atomic(self.cycles_dir / f"{result.job_type.value}.json", result.to_dict())

    def last_cycles(self) -> dict[str, dict[str, Any]]:
        return {
            job_type.value: _read_json(self.cycles_dir / f"{job_type.value}.json")
            for job_type in JobType
            if (self.cycles_dir / f"{job_type.value}.json").exists()
        }

    # Rebuild

    async def rebuild(self, primary, secondaries=(), overwrite: bool = False) -> dict[str, int]:
        """
        Re-derive artifact documents from the primary store.

        Objects under ``artifacts/`` come back as ``created`` so the next cycle
        re-verifies them; objects under ``quarantine/`` come back as ``failed``.
        Secondary copies of equal size are recorded as remote locations.

        Args:
            primary: Primary :class:`StorageBackend`
            secondaries: Secondary backends to look for copies in
            overwrite: Replace existing documents

        Returns:
            Counts of restored, skipped and unrecognized objects
        """
        stats = {"restored": 0, "skipped": 0, "unrecognized": 0}
        secondary_listings = {}
        for backend in secondaries:
            secondary_listings[backend.backend_id] = (
                backend,
                {obj.key: obj.size_bytes for obj in await backend.list_objects(ARTIFACT_PREFIX)},
            )

        objects = await primary.list_objects(ARTIFACT_PREFIX) + await primary.list_objects(QUARANTINE_PREFIX)
        for obj in objects:
            info = await primary.stat(obj.key)
            metadata = info.metadata if info else {}
            artifact_id = metadata.get("artifact-id")
            if not artifact_id or "kind" not in metadata or "created-at" not in metadata:
                stats["unrecognized"] += 1
                logger.warning(f"Cannot rebuild catalog entry for {obj.key}: missing metadata")
                continue
            if self._artifact_path(artifact_id).exists() and not overwrite:
                stats["skipped"] += 1
                continue

            quarantined = obj.key.startswith(QUARANTINE_PREFIX)
            remote_locations = {}
            if not quarantined:
                for region_id, (backend, sizes) in secondary_listings.items():
                    if sizes.get(obj.key) == obj.size_bytes:
                        remote_locations[region_id] = RegionRef(region_id, backend.location)

            created_at = datetime.fromisoformat(metadata["created-at"])
            status = ArtifactStatus.FAILED if quarantined else ArtifactStatus.CREATED
            artifact = BackupArtifact(
                artifact_id=artifact_id,
                kind=ArtifactKind(metadata["kind"]),
                created_at=created_at,
                source_system=metadata.get("source-system", "unknown"),
                storage_key=obj.key,
                local_path=f"{primary.location}/{obj.key}",
                size_bytes=obj.size_bytes,
                checksum=metadata.get("checksum"),
                status=status,
                remote_locations=remote_locations,
                payload_format=metadata.get("payload-format", "sql.gz"),
                hostname=metadata.get("hostname"),
                tags={"rebuilt": "true"},
            )
            _write_json_atomic(self._artifact_path(artifact_id), artifact.to_dict())
            stats["restored"] += 1

        logger.info(
            f"Catalog rebuild: {stats['restored']} restored, {stats['skipped']} skipped, "
            f"{stats['unrecognized']} unrecognized"
        )
        return stats

    def summary(self) -> dict[str, Any]:
        """Counts per status and kind plus cursor and last cycle records."""
        by_status: dict[str, int] = {status.value: 0 for status in ArtifactStatus}
        by_kind: dict[str, int] = {kind.value: 0 for kind in ArtifactKind}
        total_bytes = 0
        for artifact in self.list_artifacts():
            by_status[artifact.status.value] += 1
            by_kind[artifact.kind.value] += 1
            if artifact.status != ArtifactStatus.EXPIRED:
                total_bytes += artifact.size_bytes

        reports = self.list_sync_reports()
        latest = reports[-1] if reports else None
        return {
            "artifacts_by_status": by_status,
            "artifacts_by_kind": by_kind,
            "stored_bytes": total_bytes,
            "wal_cursor": self.get_wal_cursor(),
            "archive_counter": self.get_archive_counter(),
            "latest_sync_report": {
                "cycle_id": latest.cycle_id,
                "status": latest.status.value,
                "mismatched_artifact_ids": list(latest.mismatched_artifact_ids),
                "acknowledged": self.get_acknowledgement(latest.cycle_id) is not None,
            } if latest else None,
            "last_cycles": self.last_cycles(),
            "active_leases": self.active_leases(),
        }
