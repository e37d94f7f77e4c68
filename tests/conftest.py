"""
Pytest Configuration and Fixtures
Provides shared fixtures and configuration for all tests.
"""
import shutil
import sqlite3
import tempfile
from collections.abc import Generator
from datetime import datetime, timezone
from pathlib import Path

import pytest

from drvault.backup.catalog import ArtifactCatalog
from drvault.backup.storage_backends import LocalStorageBackend
from drvault.config import BackupSettings
from drvault.models import ArtifactKind, ArtifactStatus, BackupArtifact

WAL_SEGMENTS = [
    "000000010000000000000001",
    "000000010000000000000002",
    "000000010000000000000003",
]


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        # Mark integration tests
        if "integration" in item.nodeid.lower():
            item.add_marker(pytest.mark.integration)

        # Mark slow tests
        if any(keyword in item.name.lower() for keyword in ["lifecycle", "slow"]):
            item.add_marker(pytest.mark.slow)


class FixedClock:
    """Settable clock for deterministic timestamps."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# Temporary directories and files
@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def source_db(temp_dir) -> Path:
    """SQLite source database with 10 customers and 4 orders."""
    db_path = temp_dir / "source.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE customers (id INTEGER PRIMARY KEY, name TEXT NOT NULL, country TEXT)")
    conn.execute("CREATE TABLE orders (id INTEGER PRIMARY KEY, customer_id INTEGER, amount REAL)")
    conn.executemany(
        "INSERT INTO customers (id, name, country) VALUES (?, ?, ?)",
        [(i, f"Customer {i}", ["UK", "USA", "Germany"][i % 3]) for i in range(1, 11)],
    )
    conn.executemany(
        "INSERT INTO orders (id, customer_id, amount) VALUES (?, ?, ?)",
        [(1, 1, 10.5), (2, 2, 99.0), (3, 2, 12.25), (4, 7, 1.0)],
    )
    conn.commit()
    conn.close()
    return db_path


@pytest.fixture
def wal_dir(temp_dir) -> Path:
    """WAL archive directory holding three segments."""
    directory = temp_dir / "wal_archive"
    directory.mkdir()
    for index, name in enumerate(WAL_SEGMENTS):
        (directory / name).write_bytes(bytes([index]) * 4096)
    return directory


@pytest.fixture
def file_store(temp_dir) -> Path:
    """File store directory with a nested layout."""
    root = temp_dir / "files"
    (root / "invoices" / "2026").mkdir(parents=True)
    (root / "readme.txt").write_text("file store root\n")
    (root / "invoices" / "2026" / "inv-001.csv").write_text("id,amount\n1,10.5\n")
    (root / "invoices" / "2026" / "inv-002.csv").write_text("id,amount\n2,99.0\n")
    return root


@pytest.fixture
def make_settings(temp_dir, source_db, wal_dir, file_store):
    """Factory for settings rooted in the temporary directory."""
    def factory(**overrides) -> BackupSettings:
        values = {
            "backup_root": temp_dir / "backups",
            "database_path": source_db,
            "wal_archive_dir": wal_dir,
            "file_store_path": file_store,
            "primary_bucket_or_path": str(temp_dir / "regions" / "primary"),
            "min_free_bytes": 0,
            "reconcile_grace_seconds": 0,
            "retry_attempts": 1,
            "retry_delay_seconds": 0,
            "operation_timeout_seconds": 30,
            "log_channel": False,
        }
        values.update(overrides)
        return BackupSettings(**values)
    return factory


@pytest.fixture
def settings(make_settings) -> BackupSettings:
    return make_settings()


@pytest.fixture
def region_configs(temp_dir) -> list[dict]:
    return [
        {"region_id": "region-a", "bucket_or_path": str(temp_dir / "regions" / "a")},
        {"region_id": "region-b", "bucket_or_path": str(temp_dir / "regions" / "b")},
    ]


@pytest.fixture
def catalog(settings) -> ArtifactCatalog:
    return ArtifactCatalog(settings.catalog_path)


@pytest.fixture
def primary(temp_dir) -> LocalStorageBackend:
    return LocalStorageBackend("primary", {"base_path": str(temp_dir / "regions" / "primary")})


@pytest.fixture
def secondaries(temp_dir) -> list[LocalStorageBackend]:
    return [
        LocalStorageBackend("region-a", {"base_path": str(temp_dir / "regions" / "a")}),
        LocalStorageBackend("region-b", {"base_path": str(temp_dir / "regions" / "b")}),
    ]


@pytest.fixture
def make_artifact():
    """Factory for catalog artifacts without payloads."""
    def factory(
        artifact_id: str = "full-20260101T020000Z-aaaaaa",
        kind: ArtifactKind = ArtifactKind.FULL,
        created_at: datetime = datetime(2026, 1, 1, 2, 0, tzinfo=timezone.utc),
        status: ArtifactStatus = ArtifactStatus.CREATED,
        **fields,
    ) -> BackupArtifact:
        extension = "sql.gz" if kind == ArtifactKind.FULL else "tar.gz"
        values = {
            "storage_key": f"artifacts/{kind.value}/{artifact_id}.{extension}",
            "local_path": f"/store/artifacts/{kind.value}/{artifact_id}.{extension}",
            "source_system": "sqlite:source.db",
            "size_bytes": 1024,
            "checksum": "0" * 64,
        }
        values.update(fields)
        return BackupArtifact(
            artifact_id=artifact_id, kind=kind, created_at=created_at, status=status, **values
        )
    return factory


@pytest.fixture
def fixed_clock() -> FixedClock:
    return FixedClock(datetime(2026, 1, 1, 2, 0, tzinfo=timezone.utc))
