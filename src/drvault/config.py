"""
Backup Engine Configuration
Settings are read from the environment (``DRVAULT_`` prefix) and ``.env``.
"""
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from drvault.exceptions import ConfigurationError
from drvault.models import ArtifactKind, JobType, RetentionPolicy


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class DatabaseKind(str, Enum):
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class RegionConfig(BaseModel):
    """A storage location used as a replication target."""

    region_id: str
    backend: str = "local"
    bucket_or_path: str
    prefix: str = ""
    endpoint_url: str | None = None


class BackupSettings(BaseSettings):
    """Configuration for the backup and disaster-recovery engine."""

    environment: Environment = Field(default=Environment.PRODUCTION)

    # Local artifact store and catalog
    backup_root: Path = Field(default_factory=lambda: Path.cwd() / "backups")
    min_free_bytes: int = Field(default=512 * 1024 * 1024)

    # Database collaborator
    database_kind: DatabaseKind = Field(default=DatabaseKind.SQLITE)
    database_path: Path | None = Field(default=None)
    database_url: str | None = Field(default=None)
    wal_archive_dir: Path | None = Field(default=None)
    pg_bin_dir: Path | None = Field(default=None)

    # File store collaborator
    file_store_path: Path | None = Field(default=None)

    # Regions
    primary_region: str = Field(default="primary")
    primary_backend: str = Field(default="local")
    primary_bucket_or_path: str | None = Field(default=None)
    primary_prefix: str = Field(default="")
    primary_endpoint_url: str | None = Field(default=None)
    secondary_regions: list[RegionConfig] = Field(default_factory=list)
    storage_class: str = Field(default="STANDARD_IA")

    # Retention in days, keyed by artifact kind
    retention_days: dict[str, int] = Field(default_factory=lambda: {
        ArtifactKind.FULL.value: 30,
        ArtifactKind.INCREMENTAL.value: 30,
        ArtifactKind.FILE_SNAPSHOT.value: 90,
    })

    # Cadence
    full_backup_schedule: str = Field(default="0 2 * * *")
    incremental_interval_minutes: int = Field(default=60)
    validation_schedule: str = Field(default="0 4 * * 1")
    region_sync_interval_minutes: int = Field(default=60)
    poll_interval_seconds: float = Field(default=30.0)

    # Validation
    validation_sample_size: int = Field(default=3)

    # Timeouts and retries
    operation_timeout_seconds: float = Field(default=1800.0)
    cycle_budget_seconds: float = Field(default=6 * 3600.0)
    retry_attempts: int = Field(default=3)
    retry_delay_seconds: float = Field(default=5.0)
    retry_backoff: float = Field(default=2.0)

    # Reconciliation
    reconcile_grace_seconds: int = Field(default=300)
    auto_resync_on_drift: bool = Field(default=False)

    # Notification channels
    log_channel: bool = Field(default=True)
    slack_webhook_url: str | None = Field(default=None)
    webhook_url: str | None = Field(default=None)
    smtp_host: str | None = Field(default=None)
    smtp_port: int = Field(default=587)
    smtp_username: str | None = Field(default=None)
    smtp_password: str | None = Field(default=None)
    smtp_from: str | None = Field(default=None)
    email_to: list[str] = Field(default_factory=list)
    notification_timeout_seconds: float = Field(default=10.0)

    model_config = SettingsConfigDict(
        env_prefix="DRVAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("backup_root", "database_path", "wal_archive_dir", "file_store_path", mode="before")
    @classmethod
    def resolve_paths(cls, v: Any) -> Path | None:
        """Resolve paths to absolute paths."""
        if v is None or v == "":
            return None
        return Path(v).expanduser().resolve()

    @field_validator("retention_days")
    @classmethod
    def check_retention_kinds(cls, v: dict[str, int]) -> dict[str, int]:
        known = {kind.value for kind in ArtifactKind}
        unknown = set(v) - known
        if unknown:
            raise ValueError(f"Unknown artifact kinds in retention_days: {sorted(unknown)}")
        if any(days < 0 for days in v.values()):
            raise ValueError("retention_days values must be non-negative")
        return v

    @property
    def catalog_path(self) -> Path:
        return self.backup_root / "catalog"

    @property
    def staging_path(self) -> Path:
        return self.backup_root / "staging"

    @property
    def sandbox_path(self) -> Path:
        return self.backup_root / "sandbox"

    @property
    def lock_path(self) -> Path:
        return self.backup_root / "locks"

    def retention_policies(self) -> list[RetentionPolicy]:
        """Retention policies derived from ``retention_days``."""
        return [
            RetentionPolicy(applies_to=ArtifactKind(kind), max_age_days=days)
            for kind, days in sorted(self.retention_days.items())
        ]

    def primary_store_config(self) -> dict[str, Any]:
        """Backend configuration for the primary artifact store."""
        if self.primary_backend == "local":
            base = self.primary_bucket_or_path or str(self.backup_root / "store")
            return {"base_path": base, "region": self.primary_region}
        return {
            "bucket_name": self.primary_bucket_or_path,
            "prefix": self.primary_prefix,
            "region": self.primary_region,
            "endpoint_url": self.primary_endpoint_url,
        }

    def validate_required(self, job_type: JobType) -> None:
        """
        Check every parameter the job needs before any side effect.

        Raises:
            ConfigurationError: listing all missing or inconsistent parameters
        """
        missing: list[str] = []
        needs_database = job_type in (
            JobType.FULL_BACKUP, JobType.INCREMENTAL_SWEEP, JobType.VALIDATION,
        )

        if needs_database:
            if self.database_kind == DatabaseKind.SQLITE and self.database_path is None:
                missing.append("database_path")
            if self.database_kind == DatabaseKind.POSTGRESQL and not self.database_url:
                missing.append("database_url")

        if job_type == JobType.INCREMENTAL_SWEEP and self.wal_archive_dir is None:
            missing.append("wal_archive_dir")

        if job_type == JobType.FILE_SNAPSHOT and self.file_store_path is None:
            missing.append("file_store_path")

        if job_type == JobType.REGION_SYNC and not self.secondary_regions:
            missing.append("secondary_regions")

        if self.primary_backend == "s3" and not self.primary_bucket_or_path:
            missing.append("primary_bucket_or_path")

        for region in self.secondary_regions:
            if region.backend not in ("local", "s3"):
                missing.append(f"secondary_regions[{region.region_id}].backend")

        region_ids = [r.region_id for r in self.secondary_regions]
        if self.primary_region in region_ids or len(set(region_ids)) != len(region_ids):
            missing.append("secondary_regions (duplicate region_id)")

        if missing:
            raise ConfigurationError(
                f"Missing or invalid configuration for {job_type.value}: {', '.join(missing)}",
                missing=missing,
            )


def get_settings(**overrides: Any) -> BackupSettings:
    """Load settings from the environment, applying explicit overrides."""
    return BackupSettings(**overrides)
