"""
Tests for the backup command line interface.
"""
import json

import pytest
from click.testing import CliRunner

from drvault.backup.cli import cli


def last_json_line(output: str) -> dict:
    lines = [line for line in output.splitlines() if line.strip()]
    return json.loads(lines[-1])


class TestBackupCLI:
    """Test commands end to end against local stores."""

    @pytest.fixture(autouse=True)
    def setup_env(self, temp_dir, source_db, wal_dir, file_store, region_configs):
        self.runner = CliRunner()
        self.backup_root = temp_dir / "backups"
        self.env = {
            "DRVAULT_DATABASE_PATH": str(source_db),
            "DRVAULT_WAL_ARCHIVE_DIR": str(wal_dir),
            "DRVAULT_FILE_STORE_PATH": str(file_store),
            "DRVAULT_PRIMARY_BUCKET_OR_PATH": str(temp_dir / "regions" / "primary"),
            "DRVAULT_SECONDARY_REGIONS": json.dumps(region_configs),
            "DRVAULT_MIN_FREE_BYTES": "0",
            "DRVAULT_RECONCILE_GRACE_SECONDS": "0",
            "DRVAULT_RETRY_DELAY_SECONDS": "0",
            "DRVAULT_LOG_CHANNEL": "false",
        }

    def invoke(self, *args, **env):
        return self.runner.invoke(
            cli, ["--backup-root", str(self.backup_root), *args], env={**self.env, **env}
        )

    def test_full_backup(self):
        result = self.invoke("backup", "full")

        assert result.exit_code == 0, result.output
        summary = last_json_line(result.stdout)
        assert summary["state"] == "completed"
        assert summary["severity"] == "success"
        assert len(summary["artifact_ids"]) == 2
        assert summary["failed_steps"] == []

    def test_status_json_and_table(self):
        self.invoke("backup", "files")

        status = last_json_line(self.invoke("status").stdout)
        table = self.invoke("status", "--format", "table")

        assert status["artifacts_by_status"]["replicated"] == 1
        assert [a["kind"] for a in status["artifacts"]] == ["file-snapshot"]
        assert table.exit_code == 0
        assert "Artifact" in table.stdout
        assert "region-a, region-b" in table.stdout
        assert "Last cycles:" in table.stdout
        assert status["lock_holders"] == {}

    def test_missing_configuration_exits_non_zero(self):
        result = self.invoke("backup", "incremental", DRVAULT_WAL_ARCHIVE_DIR="")

        assert result.exit_code == 1
        summary = last_json_line(result.stdout)
        assert summary["failed_steps"] == ["configuration"]

    def test_validate(self):
        self.invoke("backup", "full")

        result = self.invoke("validate", "1")

        assert result.exit_code == 0, result.output
        assert last_json_line(result.stdout)["job_type"] == "validation"

    def test_replicate_and_retain(self):
        self.invoke("backup", "full")

        assert self.invoke("replicate").exit_code == 0
        assert self.invoke("retain").exit_code == 0

    def test_rebuild_catalog_keeps_existing(self):
        self.invoke("backup", "full")

        result = self.invoke("rebuild-catalog")

        assert result.exit_code == 0
        assert last_json_line(result.stdout) == {"restored": 0, "skipped": 2, "unrecognized": 0}

    def test_ack_drift_without_report(self):
        result = self.invoke("ack-drift", "region-sync-unknown", "--operator", "alice")

        assert result.exit_code == 1
        assert "No sync report for cycle region-sync-unknown" in result.output

    def test_invalid_configuration(self):
        result = self.invoke("status", DRVAULT_RETENTION_DAYS='{"weekly": 7}')

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
