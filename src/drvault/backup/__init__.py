"""
Backup and Disaster Recovery System

Artifact production, integrity verification, restore-test validation,
cross-region replication and retention, driven per job type by the
orchestrator and its scheduler.
"""

from .backup_manager import BackupManager
from .catalog import ArtifactCatalog
from .integrity import IntegrityVerifier, PayloadFormat, VerificationReport
from .notifications import NotificationDispatcher, create_dispatcher
from .orchestrator import BackupOrchestrator
from .replication import ReplicationManager, ReplicationOutcome
from .retention import ExpiredSet, RetentionManager
from .scheduler import BackupScheduler, JobLock, JobSchedule
from .storage_backends import (
    LocalStorageBackend,
    S3Backend,
    StorageBackend,
    create_storage_backend,
)
from .validation import RestoreValidator, ValidationSummary

__all__ = [
    # Core Components
    "ArtifactCatalog",
    "BackupManager",
    "IntegrityVerifier",
    "PayloadFormat",
    "VerificationReport",

    # Storage Backends
    "LocalStorageBackend",
    "S3Backend",
    "StorageBackend",
    "create_storage_backend",

    # Validation
    "RestoreValidator",
    "ValidationSummary",

    # Replication and Retention
    "ReplicationManager",
    "ReplicationOutcome",
    "RetentionManager",
    "ExpiredSet",

    # Notifications
    "NotificationDispatcher",
    "create_dispatcher",

    # Orchestration
    "BackupOrchestrator",
    "BackupScheduler",
    "JobLock",
    "JobSchedule",
]
