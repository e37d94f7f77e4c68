"""
Backup Integrity Checking

Format sanity and checksum recomputation for artifact payloads. A payload is
only reported as verified when every check passes.
"""
from __future__ import annotations

import gzip
import hashlib
import tarfile
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from drvault.logging import get_logger

logger = get_logger(__name__)

CHUNK_SIZE = 1024 * 1024

PG_CUSTOM_MAGIC = b"PGDMP"


class PayloadFormat(str, Enum):
    """On-disk formats produced by the backup producer."""
    SQL_GZ = "sql.gz"
    TAR_GZ = "tar.gz"
    PG_CUSTOM = "pg-custom"

    @property
    def extension(self) -> str:
        return "dump" if self == PayloadFormat.PG_CUSTOM else self.value


class CheckResult(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class VerificationOutcome(str, Enum):
    VERIFIED = "verified"
    CORRUPTION_DETECTED = "corruption-detected"


@dataclass
class IntegrityCheck:
    """Individual integrity check result."""
    check_name: str
    result: CheckResult
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            'check_name': self.check_name,
            'result': self.result.value,
            'message': self.message,
            'metadata': self.metadata,
        }


@dataclass
class VerificationReport:
    """Outcome of verifying one payload."""
    artifact_id: str
    outcome: VerificationOutcome
    checks: list[IntegrityCheck]
    actual_checksum: str | None = None

    @property
    def verified(self) -> bool:
        return self.outcome == VerificationOutcome.VERIFIED

    @property
    def failed_checks(self) -> list[IntegrityCheck]:
        return [check for check in self.checks if check.result == CheckResult.FAILED]

    def to_dict(self) -> dict[str, Any]:
        return {
            'artifact_id': self.artifact_id,
            'outcome': self.outcome.value,
            'checks': [check.to_dict() for check in self.checks],
            'actual_checksum': self.actual_checksum,
        }


def calculate_checksum(file_path: Path, algorithm: str = "sha256") -> str:
    """Calculate the hex digest of a file, read in chunks."""
    digest = hashlib.new(algorithm)
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


class IntegrityVerifier:
    """Checks that a payload is readable in its declared format and matches its checksum."""

    def __init__(self, checksum_algorithm: str = "sha256"):
        self.checksum_algorithm = checksum_algorithm

    async def verify_payload(
        self,
        artifact_id: str,
        payload_path: Path,
        expected_checksum: str | None,
        payload_format: PayloadFormat | str,
    ) -> VerificationReport:
        """
        Run format sanity then checksum recomputation.

        Args:
            artifact_id: Artifact the payload belongs to
            payload_path: Local copy of the payload
            expected_checksum: Checksum recorded at production time
            payload_format: Declared payload format

        Returns:
            Report with outcome ``VERIFIED`` only if every check passed
        """
        payload_format = PayloadFormat(payload_format)
        checks: list[IntegrityCheck] = []

        if not payload_path.is_file():
            checks.append(IntegrityCheck(
                check_name="file_existence",
                result=CheckResult.FAILED,
                message=f"Payload not found: {payload_path}",
            ))
            return VerificationReport(artifact_id, VerificationOutcome.CORRUPTION_DETECTED, checks)

        checks.append(self._check_format(payload_path, payload_format))

        actual_checksum = calculate_checksum(payload_path, self.checksum_algorithm)
        if not expected_checksum:
            checks.append(IntegrityCheck(
                check_name="checksum_validation",
                result=CheckResult.FAILED,
                message="No checksum recorded for artifact",
                metadata={"actual": actual_checksum},
            ))
        elif actual_checksum == expected_checksum:
            checks.append(IntegrityCheck(
                check_name="checksum_validation",
                result=CheckResult.PASSED,
                message="Checksum validation passed",
                metadata={"algorithm": self.checksum_algorithm, "checksum": actual_checksum},
            ))
        else:
            checks.append(IntegrityCheck(
                check_name="checksum_validation",
                result=CheckResult.FAILED,
                message=f"Checksum mismatch (expected: {expected_checksum}, actual: {actual_checksum})",
                metadata={"expected": expected_checksum, "actual": actual_checksum},
            ))

        failed = any(check.result == CheckResult.FAILED for check in checks)
        outcome = VerificationOutcome.CORRUPTION_DETECTED if failed else VerificationOutcome.VERIFIED
        report = VerificationReport(artifact_id, outcome, checks, actual_checksum)

        if failed:
            logger.error(
                f"Integrity check failed for {artifact_id}: "
                + "; ".join(check.message for check in report.failed_checks)
            )
        else:
            logger.info(f"Integrity verified for {artifact_id}")
        return report

    def _check_format(self, payload_path: Path, payload_format: PayloadFormat) -> IntegrityCheck:
        """Validate backup file format."""
        try:
            if payload_format == PayloadFormat.TAR_GZ:
                with tarfile.open(payload_path, "r:gz") as tar:
                    members = tar.getmembers()
                    # Reading every member drives the gzip stream to its CRC trailer
                    for member in members:
                        if member.isfile():
                            extracted = tar.extractfile(member)
                            if extracted is not None:
                                while extracted.read(CHUNK_SIZE):
                                    pass
                return IntegrityCheck(
                    check_name="tar_format",
                    result=CheckResult.PASSED,
                    message="TAR archive is listable",
                    metadata={"members": len(members)},
                )

            if payload_format == PayloadFormat.SQL_GZ:
                with gzip.open(payload_path, "rb") as f:
                    header = f.readline()
                    while f.read(CHUNK_SIZE):
                        pass
                if not (header.startswith(b"--") or header.startswith(b"BEGIN TRANSACTION")):
                    return IntegrityCheck(
                        check_name="sql_dump_format",
                        result=CheckResult.FAILED,
                        message="Decompressed stream does not start with a SQL dump header",
                    )
                return IntegrityCheck(
                    check_name="sql_dump_format",
                    result=CheckResult.PASSED,
                    message="Compressed SQL dump is intact",
                )

            with open(payload_path, "rb") as f:
                magic = f.read(len(PG_CUSTOM_MAGIC))
            if magic != PG_CUSTOM_MAGIC:
                return IntegrityCheck(
                    check_name="pg_custom_format",
                    result=CheckResult.FAILED,
                    message="Missing PostgreSQL custom-format header",
                )
            return IntegrityCheck(
                check_name="pg_custom_format",
                result=CheckResult.PASSED,
                message="PostgreSQL custom-format header present",
            )

        except (OSError, EOFError, tarfile.TarError, zlib.error) as e:
            return IntegrityCheck(
                check_name=f"{payload_format.value}_format",
                result=CheckResult.FAILED,
                message=f"Format validation failed: {e}",
            )
