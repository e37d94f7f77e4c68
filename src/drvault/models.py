"""
Backup Engine Data Model

Artifacts, retention policies, validation runs, region references, sync reports
and the per-cycle step/result records shared by every component.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ArtifactKind(str, Enum):
    """Kinds of backup artifacts."""
    FULL = "full"
    INCREMENTAL = "incremental"
    FILE_SNAPSHOT = "file-snapshot"


class ArtifactStatus(str, Enum):
    """Lifecycle status of an artifact. Only ever advances forward."""
    CREATED = "created"
    VERIFIED = "verified"
    REPLICATED = "replicated"
    EXPIRED = "expired"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ArtifactStatus, frozenset[ArtifactStatus]] = {
    ArtifactStatus.CREATED: frozenset({ArtifactStatus.VERIFIED, ArtifactStatus.FAILED}),
    ArtifactStatus.VERIFIED: frozenset({ArtifactStatus.REPLICATED, ArtifactStatus.FAILED}),
    ArtifactStatus.REPLICATED: frozenset({ArtifactStatus.EXPIRED, ArtifactStatus.FAILED}),
    ArtifactStatus.EXPIRED: frozenset(),
    ArtifactStatus.FAILED: frozenset(),
}


def can_transition(current: ArtifactStatus, target: ArtifactStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class JobType(str, Enum):
    """Job categories; each one holds its own exclusive lock."""
    FULL_BACKUP = "full-backup"
    INCREMENTAL_SWEEP = "incremental-sweep"
    FILE_SNAPSHOT = "file-snapshot"
    VALIDATION = "validation"
    REGION_SYNC = "region-sync"
    RETENTION = "retention"


class CycleState(str, Enum):
    """Scheduler state of a job type."""
    IDLE = "idle"
    TRIGGERED = "triggered"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Severity(str, Enum):
    """Notification severity tiers, lowest first."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    FAILED = "failed"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def worst(cls, severities: list[Severity]) -> Severity:
        if not severities:
            return cls.SUCCESS
        return max(severities, key=lambda s: s.rank)


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.SUCCESS: 1,
    Severity.WARNING: 2,
    Severity.FAILED: 3,
    Severity.CRITICAL: 4,
}


class ValidationKind(str, Enum):
    """Kinds of validation runs."""
    RESTORE_DATABASE = "restore-database"
    RESTORE_FILES = "restore-files"
    PITR_PROBE = "pitr-probe"


class ValidationOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class SyncStatus(str, Enum):
    CONSISTENT = "consistent"
    DRIFTED = "drifted"


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class RegionRef:
    """A region an artifact has been copied to."""
    region_id: str
    bucket_or_path: str
    last_verified_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'region_id': self.region_id,
            'bucket_or_path': self.bucket_or_path,
            'last_verified_at': self.last_verified_at.isoformat() if self.last_verified_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegionRef:
        return cls(
            region_id=data["region_id"],
            bucket_or_path=data["bucket_or_path"],
            last_verified_at=_parse_dt(data.get("last_verified_at")),
        )


@dataclass
class BackupArtifact:
    """A single backup payload plus its metadata."""
    artifact_id: str
    kind: ArtifactKind
    created_at: datetime
    source_system: str
    storage_key: str
    local_path: str
    size_bytes: int = 0
    checksum: str | None = None
    status: ArtifactStatus = ArtifactStatus.CREATED
    remote_locations: dict[str, RegionRef] = field(default_factory=dict)
    status_history: list[dict[str, str]] = field(default_factory=list)
    payload_format: str = "gzip"
    hostname: str | None = None
    source_version: str | None = None
    file_count: int | None = None
    expected_rows: dict[str, int] = field(default_factory=dict)
    wal_segments: list[str] = field(default_factory=list)
    error_message: str | None = None
    revision: int = 0
    tags: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.status_history:
            self.status_history.append({
                "status": self.status.value,
                "at": self.created_at.isoformat(),
            })

    def age_days(self, now: datetime) -> int:
        """Age in whole days since creation."""
        return (now - self.created_at).days

    @property
    def region_ids(self) -> set[str]:
        return set(self.remote_locations)

    def to_dict(self) -> dict[str, Any]:
        """Convert artifact to dictionary for serialization."""
        return {
            'artifact_id': self.artifact_id,
            'kind': self.kind.value,
            'created_at': self.created_at.isoformat(),
            'source_system': self.source_system,
            'storage_key': self.storage_key,
            'local_path': self.local_path,
            'size_bytes': self.size_bytes,
            'checksum': self.checksum,
            'status': self.status.value,
            'remote_locations': {
                region_id: ref.to_dict() for region_id, ref in sorted(self.remote_locations.items())
            },
            'status_history': self.status_history,
            'payload_format': self.payload_format,
            'hostname': self.hostname,
            'source_version': self.source_version,
            'file_count': self.file_count,
            'expected_rows': self.expected_rows,
            'wal_segments': self.wal_segments,
            'error_message': self.error_message,
            'revision': self.revision,
            'tags': self.tags,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupArtifact:
        return cls(
            artifact_id=data["artifact_id"],
            kind=ArtifactKind(data["kind"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            source_system=data["source_system"],
            storage_key=data["storage_key"],
            local_path=data["local_path"],
            size_bytes=data.get("size_bytes", 0),
            checksum=data.get("checksum"),
            status=ArtifactStatus(data.get("status", ArtifactStatus.CREATED.value)),
            remote_locations={
                region_id: RegionRef.from_dict(ref)
                for region_id, ref in data.get("remote_locations", {}).items()
            },
            status_history=list(data.get("status_history", [])),
            payload_format=data.get("payload_format", "gzip"),
            hostname=data.get("hostname"),
            source_version=data.get("source_version"),
            file_count=data.get("file_count"),
            expected_rows=dict(data.get("expected_rows", {})),
            wal_segments=list(data.get("wal_segments", [])),
            error_message=data.get("error_message"),
            revision=data.get("revision", 0),
            tags=dict(data.get("tags", {})),
        )


@dataclass(frozen=True)
class RetentionPolicy:
    """Maximum age for one artifact kind."""
    applies_to: ArtifactKind
    max_age_days: int

    def is_expired(self, artifact: BackupArtifact, now: datetime) -> bool:
        """Expiry is inclusive: an artifact aged exactly ``max_age_days`` expires."""
        return artifact.kind == self.applies_to and artifact.age_days(now) >= self.max_age_days

    def to_dict(self) -> dict[str, Any]:
        return {'applies_to': self.applies_to.value, 'max_age_days': self.max_age_days}


@dataclass(frozen=True)
class ValidationRun:
    """One restore test of one artifact. Append-only."""
    run_id: str
    artifact_id: str
    tested_at: datetime
    kind: ValidationKind
    outcome: ValidationOutcome
    detail: dict[str, Any] = field(default_factory=dict)
    cycle_id: str | None = None

    @property
    def passed(self) -> bool:
        return self.outcome == ValidationOutcome.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            'run_id': self.run_id,
            'artifact_id': self.artifact_id,
            'tested_at': self.tested_at.isoformat(),
            'kind': self.kind.value,
            'outcome': self.outcome.value,
            'detail': self.detail,
            'cycle_id': self.cycle_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationRun:
        return cls(
            run_id=data["run_id"],
            artifact_id=data["artifact_id"],
            tested_at=datetime.fromisoformat(data["tested_at"]),
            kind=ValidationKind(data["kind"]),
            outcome=ValidationOutcome(data["outcome"]),
            detail=data.get("detail", {}),
            cycle_id=data.get("cycle_id"),
        )


@dataclass(frozen=True)
class RegionSyncStats:
    """Reconciliation numbers for one secondary region."""
    region_id: str
    secondary_count: int
    secondary_bytes: int
    missing_ids: tuple[str, ...] = ()
    size_mismatch_ids: tuple[str, ...] = ()
    extra_ids: tuple[str, ...] = ()
    error: str | None = None

    @property
    def consistent(self) -> bool:
        return not (self.missing_ids or self.size_mismatch_ids or self.extra_ids) and self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            'region_id': self.region_id,
            'secondary_count': self.secondary_count,
            'secondary_bytes': self.secondary_bytes,
            'missing_ids': list(self.missing_ids),
            'size_mismatch_ids': list(self.size_mismatch_ids),
            'extra_ids': list(self.extra_ids),
            'error': self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegionSyncStats:
        return cls(
            region_id=data["region_id"],
            secondary_count=data["secondary_count"],
            secondary_bytes=data["secondary_bytes"],
            missing_ids=tuple(data.get("missing_ids", [])),
            size_mismatch_ids=tuple(data.get("size_mismatch_ids", [])),
            extra_ids=tuple(data.get("extra_ids", [])),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class SyncReport:
    """Result of one consistency reconciliation. Immutable once written."""
    cycle_id: str
    created_at: datetime
    primary_count: int
    secondary_count: int
    primary_bytes: int
    secondary_bytes: int
    mismatched_artifact_ids: tuple[str, ...]
    status: SyncStatus
    regions: tuple[RegionSyncStats, ...] = ()
    replicated_artifact_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            'cycle_id': self.cycle_id,
            'created_at': self.created_at.isoformat(),
            'primary_count': self.primary_count,
            'secondary_count': self.secondary_count,
            'primary_bytes': self.primary_bytes,
            'secondary_bytes': self.secondary_bytes,
            'mismatched_artifact_ids': list(self.mismatched_artifact_ids),
            'status': self.status.value,
            'regions': [r.to_dict() for r in self.regions],
            'replicated_artifact_ids': list(self.replicated_artifact_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncReport:
        return cls(
            cycle_id=data["cycle_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            primary_count=data["primary_count"],
            secondary_count=data["secondary_count"],
            primary_bytes=data["primary_bytes"],
            secondary_bytes=data["secondary_bytes"],
            mismatched_artifact_ids=tuple(data.get("mismatched_artifact_ids", [])),
            status=SyncStatus(data["status"]),
            regions=tuple(RegionSyncStats.from_dict(r) for r in data.get("regions", [])),
            replicated_artifact_ids=tuple(data.get("replicated_artifact_ids", [])),
        )


@dataclass
class StepResult:
    """Outcome of one stage of a cycle."""
    name: str
    ok: bool
    severity: Severity = Severity.SUCCESS
    detail: str = ""
    items: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, name: str, detail: str = "", **data: Any) -> StepResult:
        return cls(name=name, ok=True, severity=Severity.SUCCESS, detail=detail, data=data)

    @classmethod
    def failure(
        cls,
        name: str,
        detail: str,
        severity: Severity = Severity.FAILED,
        items: list[str] | None = None,
        **data: Any
    ) -> StepResult:
        return cls(name=name, ok=False, severity=severity, detail=detail, items=items or [], data=data)

    def to_dict(self) -> dict[str, Any]:
        return {
            'name': self.name,
            'ok': self.ok,
            'severity': self.severity.value,
            'detail': self.detail,
            'items': self.items,
            'data': self.data,
        }


@dataclass
class CycleResult:
    """Aggregated outcome of one triggered job."""
    cycle_id: str
    job_type: JobType
    started_at: datetime
    state: CycleState = CycleState.RUNNING
    finished_at: datetime | None = None
    steps: list[StepResult] = field(default_factory=list)
    artifact_ids: list[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def severity(self) -> Severity:
        if self.skipped:
            return Severity.INFO
        return Severity.worst([step.severity for step in self.steps])

    @property
    def failed_steps(self) -> list[StepResult]:
        return [step for step in self.steps if not step.ok]

    @property
    def succeeded(self) -> bool:
        return self.state == CycleState.COMPLETED and not self.failed_steps

    @property
    def exit_code(self) -> int:
        if self.skipped:
            return 0
        return 0 if self.succeeded else 1

    def add(self, step: StepResult) -> StepResult:
        self.steps.append(step)
        return step

    def to_dict(self) -> dict[str, Any]:
        return {
            'cycle_id': self.cycle_id,
            'job_type': self.job_type.value,
            'state': self.state.value,
            'severity': self.severity.value,
            'skipped': self.skipped,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'artifact_ids': self.artifact_ids,
            'steps': [step.to_dict() for step in self.steps],
            'failed_steps': [step.name for step in self.failed_steps],
        }
