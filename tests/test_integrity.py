"""
Unit Tests for Payload Integrity Verification
"""
import gzip
import io
import tarfile

import pytest

from drvault.backup.integrity import (
    CheckResult,
    IntegrityVerifier,
    PayloadFormat,
    VerificationOutcome,
    calculate_checksum,
)


def write_sql_dump(path, header=b"-- drvault sqlite dump of source.db\n"):
    with gzip.open(path, "wb") as f:
        f.write(header)
        f.write(b"BEGIN TRANSACTION;\nCREATE TABLE t (id INTEGER);\nCOMMIT;\n")


def write_tarball(path):
    with tarfile.open(path, "w:gz") as tar:
        data = b"segment" * 100
        info = tarfile.TarInfo("000000010000000000000001")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))


class TestIntegrityVerifier:
    """Test format sanity and checksum recomputation."""

    def setup_method(self):
        self.verifier = IntegrityVerifier()

    async def test_valid_sql_dump(self, temp_dir):
        payload = temp_dir / "a.sql.gz"
        write_sql_dump(payload)

        report = await self.verifier.verify_payload(
            "a", payload, calculate_checksum(payload), PayloadFormat.SQL_GZ
        )

        assert report.verified
        assert report.failed_checks == []
        assert report.actual_checksum == calculate_checksum(payload)

    async def test_checksum_mismatch_is_corruption(self, temp_dir):
        payload = temp_dir / "a.sql.gz"
        write_sql_dump(payload)

        report = await self.verifier.verify_payload("a", payload, "0" * 64, "sql.gz")

        assert report.outcome == VerificationOutcome.CORRUPTION_DETECTED
        assert [check.check_name for check in report.failed_checks] == ["checksum_validation"]

    async def test_truncated_gzip_fails_format_check(self, temp_dir):
        payload = temp_dir / "a.sql.gz"
        write_sql_dump(payload)
        data = payload.read_bytes()
        payload.write_bytes(data[: len(data) // 2])

        report = await self.verifier.verify_payload(
            "a", payload, calculate_checksum(payload), PayloadFormat.SQL_GZ
        )

        assert not report.verified
        assert report.checks[0].result == CheckResult.FAILED

    async def test_sql_dump_without_header(self, temp_dir):
        payload = temp_dir / "a.sql.gz"
        write_sql_dump(payload, header=b"random text\n")

        report = await self.verifier.verify_payload(
            "a", payload, calculate_checksum(payload), PayloadFormat.SQL_GZ
        )

        assert not report.verified
        assert report.failed_checks[0].check_name == "sql_dump_format"

    async def test_valid_tarball(self, temp_dir):
        payload = temp_dir / "wal.tar.gz"
        write_tarball(payload)

        report = await self.verifier.verify_payload(
            "wal", payload, calculate_checksum(payload), PayloadFormat.TAR_GZ
        )

        assert report.verified
        assert report.checks[0].metadata["members"] == 1

    async def test_flipped_byte_in_tarball(self, temp_dir):
        payload = temp_dir / "wal.tar.gz"
        write_tarball(payload)
        expected = calculate_checksum(payload)
        data = bytearray(payload.read_bytes())
        data[len(data) // 2] ^= 0xFF
        payload.write_bytes(bytes(data))

        report = await self.verifier.verify_payload("wal", payload, expected, PayloadFormat.TAR_GZ)

        assert not report.verified

    async def test_pg_custom_magic(self, temp_dir):
        payload = temp_dir / "a.dump"
        payload.write_bytes(b"PGDMP\x01\x0e\x00rest-of-dump")

        report = await self.verifier.verify_payload(
            "a", payload, calculate_checksum(payload), PayloadFormat.PG_CUSTOM
        )

        assert report.verified

    async def test_missing_payload(self, temp_dir):
        report = await self.verifier.verify_payload(
            "a", temp_dir / "absent.sql.gz", "0" * 64, PayloadFormat.SQL_GZ
        )

        assert not report.verified
        assert report.checks[0].check_name == "file_existence"

    async def test_missing_checksum_never_verifies(self, temp_dir):
        payload = temp_dir / "a.sql.gz"
        write_sql_dump(payload)

        report = await self.verifier.verify_payload("a", payload, None, PayloadFormat.SQL_GZ)

        assert not report.verified


class TestPayloadFormat:

    @pytest.mark.parametrize("payload_format,extension", [
        (PayloadFormat.SQL_GZ, "sql.gz"),
        (PayloadFormat.TAR_GZ, "tar.gz"),
        (PayloadFormat.PG_CUSTOM, "dump"),
    ])
    def test_extension(self, payload_format, extension):
        assert payload_format.extension == extension
