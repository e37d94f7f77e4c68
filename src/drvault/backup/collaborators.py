"""
External Collaborators

Adapters for the systems the engine backs up: the relational database
(SQLite in-process, PostgreSQL through its client tools), the WAL archive
directory the database archiver writes to, and a directory-based file store.
The engine only uses the abstract interfaces defined here.
"""
from __future__ import annotations

import asyncio
import gzip
import os
import shutil
import socket
import sqlite3
import tarfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from drvault.backup.integrity import PayloadFormat
from drvault.config import BackupSettings, DatabaseKind
from drvault.exceptions import BackupError, CapacityError, ConfigurationError, TransientIOError
from drvault.logging import get_logger

logger = get_logger(__name__)

SANDBOX_PREFIX = "validation_test_"

_UNREACHABLE_MARKERS = (
    "could not connect", "connection refused", "timeout expired",
    "could not translate host name", "no route to host", "server closed the connection",
)


@dataclass
class DumpInfo:
    """What the database reported about a dump it produced."""
    source_system: str
    source_version: str | None = None
    expected_rows: dict[str, int] = field(default_factory=dict)


@dataclass
class RestoreTarget:
    """An ephemeral restore target (sandbox database or directory)."""
    name: str
    location: str


@dataclass
class ArchiveStatus:
    """Continuous-archiving counters."""
    archived_count: int
    failed_count: int = 0
    last_archived_wal: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'archived_count': self.archived_count,
            'failed_count': self.failed_count,
            'last_archived_wal': self.last_archived_wal,
        }


def _raise_for_oserror(e: OSError, operation: str) -> None:
    if e.errno in (28, 122):  # ENOSPC, EDQUOT
        raise CapacityError(f"{operation}: no space left on device") from e
    raise TransientIOError(f"{operation}: {e}") from e


class DatabaseCollaborator(ABC):
    """Dump/restore primitives of the source database."""

    payload_format: PayloadFormat

    @property
    @abstractmethod
    def source_system(self) -> str:
        """Identifier of the source recorded on artifacts."""

    @abstractmethod
    async def dump_full(self, destination: Path) -> DumpInfo:
        """Write a complete self-describing snapshot to ``destination``."""

    @abstractmethod
    async def restore(self, payload: Path, sandbox_name: str) -> RestoreTarget:
        """Provision ``sandbox_name`` and restore ``payload`` into it."""

    @abstractmethod
    async def table_counts(self, target: RestoreTarget) -> dict[str, int]:
        """Row count per table in a restored sandbox."""

    @abstractmethod
    async def drop_sandbox(self, target: RestoreTarget) -> None:
        """Tear a sandbox down. Must not fail when it is already gone."""

    @abstractmethod
    async def list_sandboxes(self) -> list[RestoreTarget]:
        """Sandboxes left behind by earlier validation runs."""

    @abstractmethod
    async def create_restore_point(self, label: str) -> str:
        """Create a named restore point."""

    @abstractmethod
    async def archive_status(self) -> ArchiveStatus:
        """Continuous-archiving counters."""


class SQLiteDatabase(DatabaseCollaborator):
    """
    SQLite source. Dumps are gzip'd SQL text produced by ``iterdump``; sandboxes
    are database files under the sandbox directory.
    """

    payload_format = PayloadFormat.SQL_GZ

    def __init__(self, database_path: Path, sandbox_dir: Path, wal_archive_dir: Path | None = None):
        self.database_path = Path(database_path)
        self.sandbox_dir = Path(sandbox_dir)
        self.wal_archive = WalArchive(wal_archive_dir) if wal_archive_dir else None

    @property
    def source_system(self) -> str:
        return f"sqlite:{self.database_path.name}"

    def _connect_readonly(self) -> sqlite3.Connection:
        try:
            return sqlite3.connect(f"file:{self.database_path}?mode=ro", uri=True)
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"Database unreachable: {self.database_path}: {e}") from e

    @staticmethod
    def _count_tables(conn: sqlite3.Connection) -> dict[str, int]:
        tables = [
            row[0] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
        ]
        return {
            table: conn.execute(f'SELECT COUNT(*) FROM "{table}"').fetchone()[0]
            for table in tables
        }

    def _dump(self, destination: Path) -> DumpInfo:
        conn = self._connect_readonly()
        try:
            expected_rows = self._count_tables(conn)
            with gzip.open(destination, "wt", encoding="utf-8") as out:
                out.write(f"-- drvault sqlite dump of {self.database_path.name}\n")
                for line in conn.iterdump():
                    out.write(f"{line}\n")
        except sqlite3.Error as e:
            raise TransientIOError(f"Dump of {self.database_path} failed: {e}") from e
        except OSError as e:
            _raise_for_oserror(e, f"Writing dump {destination}")
        finally:
            conn.close()
        return DumpInfo(
            source_system=self.source_system,
            source_version=sqlite3.sqlite_version,
            expected_rows=expected_rows,
        )

    async def dump_full(self, destination: Path) -> DumpInfo:
        return await asyncio.to_thread(self._dump, destination)

    def _restore(self, payload: Path, sandbox_name: str) -> RestoreTarget:
        self.sandbox_dir.mkdir(parents=True, exist_ok=True)
        sandbox = self.sandbox_dir / f"{sandbox_name}.db"
        sandbox.unlink(missing_ok=True)
        with gzip.open(payload, "rt", encoding="utf-8") as f:
            script = f.read()
        conn = sqlite3.connect(sandbox)
        try:
            conn.executescript(script)
        finally:
            conn.close()
        return RestoreTarget(name=sandbox_name, location=str(sandbox))

    async def restore(self, payload: Path, sandbox_name: str) -> RestoreTarget:
        try:
            return await asyncio.to_thread(self._restore, payload, sandbox_name)
        except (sqlite3.Error, OSError, EOFError) as e:
            raise BackupError(f"Restore of {payload.name} into {sandbox_name} failed: {e}") from e

    def _counts(self, target: RestoreTarget) -> dict[str, int]:
        conn = sqlite3.connect(f"file:{target.location}?mode=ro", uri=True)
        try:
            return self._count_tables(conn)
        finally:
            conn.close()

    async def table_counts(self, target: RestoreTarget) -> dict[str, int]:
        return await asyncio.to_thread(self._counts, target)

    async def drop_sandbox(self, target: RestoreTarget) -> None:
        (self.sandbox_dir / f"{target.name}.db").unlink(missing_ok=True)

    async def list_sandboxes(self) -> list[RestoreTarget]:
        if not self.sandbox_dir.exists():
            return []
        return [
            RestoreTarget(name=path.stem, location=str(path))
            for path in sorted(self.sandbox_dir.glob(f"{SANDBOX_PREFIX}*.db"))
        ]

    async def create_restore_point(self, label: str) -> str:
        """SQLite has no restore points; the label is recorded in the WAL archive."""
        if self.wal_archive is None:
            raise ConfigurationError("Restore points need wal_archive_dir", missing=["wal_archive_dir"])
        return self.wal_archive.record_restore_point(label)

    async def archive_status(self) -> ArchiveStatus:
        if self.wal_archive is None:
            return ArchiveStatus(archived_count=0)
        segments = self.wal_archive.list_segments()
        return ArchiveStatus(
            archived_count=len(segments),
            last_archived_wal=segments[-1].name if segments else None,
        )


class PostgresDatabase(DatabaseCollaborator):
    """PostgreSQL source driven through pg_dump, pg_restore, createdb, dropdb and psql."""

    payload_format = PayloadFormat.PG_CUSTOM

    def __init__(self, database_url: str, pg_bin_dir: Path | None = None, timeout: float = 1800.0):
        self.database_url = database_url
        self.pg_bin_dir = pg_bin_dir
        self.timeout = timeout

    @property
    def source_system(self) -> str:
        parts = urlsplit(self.database_url)
        return f"postgresql:{parts.hostname or 'localhost'}/{parts.path.lstrip('/')}"

    def _tool(self, name: str) -> str:
        return str(self.pg_bin_dir / name) if self.pg_bin_dir else name

    def _url_for(self, database: str) -> str:
        parts = urlsplit(self.database_url)
        return urlunsplit((parts.scheme, parts.netloc, f"/{database}", parts.query, parts.fragment))

    async def _run(self, *args: str) -> str:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise TransientIOError(f"{Path(args[0]).name} timed out after {self.timeout:.0f}s") from e

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            if any(marker in message.lower() for marker in _UNREACHABLE_MARKERS):
                raise TransientIOError(f"{Path(args[0]).name} could not reach the database: {message}")
            raise BackupError(f"{Path(args[0]).name} failed ({process.returncode}): {message}")
        return stdout.decode()

    async def _query(self, sql: str, database_url: str | None = None) -> list[list[str]]:
        output = await self._run(
            self._tool("psql"), database_url or self.database_url, "-X", "-tA", "-F", "\t", "-c", sql
        )
        return [line.split("\t") for line in output.splitlines() if line]

    async def dump_full(self, destination: Path) -> DumpInfo:
        await self._run(self._tool("pg_dump"), "-Fc", "-Z", "6", "-f", str(destination), self.database_url)
        version = await self._query("SHOW server_version")
        return DumpInfo(
            source_system=self.source_system,
            source_version=version[0][0] if version else None,
        )

    async def restore(self, payload: Path, sandbox_name: str) -> RestoreTarget:
        await self._run(self._tool("createdb"), "--maintenance-db", self.database_url, sandbox_name)
        target = RestoreTarget(name=sandbox_name, location=self._url_for(sandbox_name))
        await self._run(self._tool("pg_restore"), "--no-owner", "-d", target.location, str(payload))
        return target

    async def table_counts(self, target: RestoreTarget) -> dict[str, int]:
        tables = await self._query(
            "SELECT table_schema || '.' || table_name FROM information_schema.tables "
            "WHERE table_schema NOT IN ('pg_catalog', 'information_schema') "
            "AND table_type = 'BASE TABLE' ORDER BY 1",
            target.location,
        )
        counts = {}
        for (table,) in tables:
            schema, name = table.split(".", 1)
            rows = await self._query(f'SELECT COUNT(*) FROM "{schema}"."{name}"', target.location)
            counts[table] = int(rows[0][0])
        return counts

    async def drop_sandbox(self, target: RestoreTarget) -> None:
        await self._run(
            self._tool("dropdb"), "--if-exists", "--maintenance-db", self.database_url, target.name
        )

    async def list_sandboxes(self) -> list[RestoreTarget]:
        rows = await self._query(
            f"SELECT datname FROM pg_database WHERE datname LIKE '{SANDBOX_PREFIX}%' ORDER BY 1"
        )
        return [RestoreTarget(name=row[0], location=self._url_for(row[0])) for row in rows]

    async def create_restore_point(self, label: str) -> str:
        rows = await self._query(f"SELECT pg_create_restore_point('{label}')")
        return rows[0][0] if rows else label

    async def archive_status(self) -> ArchiveStatus:
        rows = await self._query(
            "SELECT archived_count, failed_count, COALESCE(last_archived_wal, '') FROM pg_stat_archiver"
        )
        if not rows:
            return ArchiveStatus(archived_count=0)
        archived, failed, last_wal = rows[0]
        return ArchiveStatus(int(archived), int(failed), last_wal or None)


class WalArchive:
    """
    Directory the database archiver copies change-log segments into.

    Segment names sort in archive order, so a segment name is its own
    high-water mark.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def list_segments(self, after: str | None = None) -> list[Path]:
        """Segments newer than ``after``, oldest first."""
        if not self.directory.exists():
            raise TransientIOError(f"WAL archive directory not found: {self.directory}")
        segments = [
            path for path in self.directory.iterdir()
            if path.is_file() and not path.name.startswith(".")
            and not path.name.endswith((".tmp", ".partial"))
        ]
        if after is not None:
            segments = [path for path in segments if path.name > after]
        return sorted(segments, key=lambda path: path.name)

    def record_restore_point(self, label: str) -> str:
        points_dir = self.directory / ".restore_points"
        points_dir.mkdir(exist_ok=True)
        (points_dir / label).write_text(socket.gethostname(), encoding="utf-8")
        return label

    @staticmethod
    def bundle(segments: list[Path], destination: Path) -> None:
        """Pack segments into one tar.gz payload."""
        try:
            with tarfile.open(destination, "w:gz") as tar:
                for segment in segments:
                    tar.add(segment, arcname=segment.name)
        except OSError as e:
            _raise_for_oserror(e, f"Bundling WAL segments into {destination}")


class FileStoreCollaborator(ABC):
    """Snapshot/restore primitives of the object/file store."""

    @property
    @abstractmethod
    def source_system(self) -> str:
        """Identifier of the source recorded on artifacts."""

    @abstractmethod
    async def snapshot(self, destination: Path) -> int:
        """Write a tar.gz snapshot; returns the number of files captured."""

    @abstractmethod
    async def restore(self, payload: Path, sandbox_dir: Path) -> RestoreTarget:
        """Extract a snapshot into ``sandbox_dir``."""


class DirectoryFileStore(FileStoreCollaborator):
    """File store rooted at a local directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    @property
    def source_system(self) -> str:
        return f"files:{self.root.name}"

    def _snapshot(self, destination: Path) -> int:
        if not self.root.is_dir():
            raise TransientIOError(f"File store unreachable: {self.root}")
        file_count = 0
        try:
            with tarfile.open(destination, "w:gz") as tar:
                for path in sorted(self.root.rglob("*")):
                    if path.is_file():
                        tar.add(path, arcname=path.relative_to(self.root).as_posix())
                        file_count += 1
        except OSError as e:
            _raise_for_oserror(e, f"Writing snapshot {destination}")
        return file_count

    async def snapshot(self, destination: Path) -> int:
        return await asyncio.to_thread(self._snapshot, destination)

    def _restore(self, payload: Path, sandbox_dir: Path) -> RestoreTarget:
        if sandbox_dir.exists():
            shutil.rmtree(sandbox_dir)
        sandbox_dir.mkdir(parents=True)
        with tarfile.open(payload, "r:gz") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(sandbox_dir, filter="data")
            else:
                tar.extractall(sandbox_dir)
        return RestoreTarget(name=sandbox_dir.name, location=str(sandbox_dir))

    async def restore(self, payload: Path, sandbox_dir: Path) -> RestoreTarget:
        try:
            return await asyncio.to_thread(self._restore, payload, sandbox_dir)
        except (tarfile.TarError, OSError, EOFError) as e:
            raise BackupError(f"File snapshot restore of {payload.name} failed: {e}") from e


def create_database(settings: BackupSettings) -> DatabaseCollaborator:
    """Build the database collaborator selected by ``database_kind``."""
    if settings.database_kind == DatabaseKind.POSTGRESQL:
        if not settings.database_url:
            raise ConfigurationError("database_url is required for PostgreSQL", missing=["database_url"])
        return PostgresDatabase(
            settings.database_url, settings.pg_bin_dir, timeout=settings.operation_timeout_seconds
        )
    if settings.database_path is None:
        raise ConfigurationError("database_path is required for SQLite", missing=["database_path"])
    return SQLiteDatabase(settings.database_path, settings.sandbox_path, settings.wal_archive_dir)


def create_file_store(settings: BackupSettings) -> FileStoreCollaborator | None:
    if settings.file_store_path is None:
        return None
    return DirectoryFileStore(settings.file_store_path)


def hostname() -> str:
    return os.environ.get("DRVAULT_HOSTNAME") or socket.gethostname()
