"""
Storage Backend Implementations

Uniform put/get/list/delete/stat interface over the local filesystem and
S3-compatible object storage. Every region (primary and secondaries) is
addressed through one of these backends.
"""
from __future__ import annotations

import asyncio
import errno
import json
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any

import boto3
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from drvault.exceptions import CapacityError, TransientIOError
from drvault.logging import get_logger

logger = get_logger(__name__)

METADATA_DIR = ".meta"


@dataclass(frozen=True)
class ObjectInfo:
    """A stored object as seen by a listing or stat."""
    key: str
    size_bytes: int
    modified_at: datetime
    metadata: dict[str, str] = field(default_factory=dict)
    storage_class: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'key': self.key,
            'size_bytes': self.size_bytes,
            'modified_at': self.modified_at.isoformat(),
            'metadata': self.metadata,
            'storage_class': self.storage_class,
        }


def _check_key(key: str) -> str:
    path = PurePosixPath(key)
    if not key or path.is_absolute() or ".." in path.parts or path.parts[0] == METADATA_DIR:
        raise ValueError(f"Invalid storage key: {key!r}")
    return str(path)


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    def __init__(self, backend_id: str, config: dict[str, Any]):
        self.backend_id = backend_id
        self.config = config
        self.region = config.get("region", backend_id)

    @property
    @abstractmethod
    def location(self) -> str:
        """Bucket or path this backend writes to."""

    @abstractmethod
    async def put(
        self,
        key: str,
        source_path: Path,
        storage_class: str | None = None,
        metadata: dict[str, str] | None = None
    ) -> ObjectInfo:
        """Store a file under ``key``, replacing any previous object."""

    @abstractmethod
    async def get(self, key: str, destination_path: Path) -> Path:
        """Download ``key`` to ``destination_path``."""

    @abstractmethod
    async def list_objects(self, prefix: str = "") -> list[ObjectInfo]:
        """List objects whose key starts with ``prefix``, sorted by key."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns False when the object was already absent."""

    @abstractmethod
    async def stat(self, key: str) -> ObjectInfo | None:
        """Return object info, or None when the object does not exist."""

    async def exists(self, key: str) -> bool:
        return await self.stat(key) is not None

    async def sync(
        self,
        prefix: str,
        destination: StorageBackend,
        staging_dir: Path,
        storage_class: str | None = None,
    ) -> list[str]:
        """
        Copy objects under ``prefix`` that are missing or differ in size at ``destination``.

        Returns:
            Keys that were copied
        """
        source_objects = await self.list_objects(prefix)
        dest_sizes = {obj.key: obj.size_bytes for obj in await destination.list_objects(prefix)}
        copied = []

        for obj in source_objects:
            if dest_sizes.get(obj.key) == obj.size_bytes:
                continue
            tmp_path = staging_dir / f"sync-{destination.backend_id}-{PurePosixPath(obj.key).name}"
            try:
                await self.get(obj.key, tmp_path)
                info = await self.stat(obj.key)
                metadata = dict(info.metadata) if info else {}
                metadata["source-region"] = self.region
                await destination.put(obj.key, tmp_path, storage_class, metadata)
                copied.append(obj.key)
            finally:
                tmp_path.unlink(missing_ok=True)

        logger.info(f"Synced {len(copied)} objects under '{prefix}' to {destination.backend_id}")
        return copied

    async def get_storage_stats(self, prefix: str = "") -> dict[str, Any]:
        """Object count and total size under ``prefix``."""
        objects = await self.list_objects(prefix)
        return {
            "backend_id": self.backend_id,
            "region": self.region,
            "location": self.location,
            "total_files": len(objects),
            "total_size_bytes": sum(obj.size_bytes for obj in objects),
        }


class LocalStorageBackend(StorageBackend):
    """
    Local filesystem storage backend.

    Objects live at ``base_path/<key>``; their metadata is kept in a JSON
    sidecar under ``base_path/.meta/<key>.json``. Writes go to a temporary
    file in the target directory and are renamed into place.
    """

    def __init__(self, backend_id: str, config: dict[str, Any]):
        super().__init__(backend_id, config)
        self.base_path = Path(config.get("base_path", "./storage")).expanduser()
        self.base_path.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        return str(self.base_path)

    def _object_path(self, key: str) -> Path:
        return self.base_path / _check_key(key)

    def _metadata_path(self, key: str) -> Path:
        return self.base_path / METADATA_DIR / f"{_check_key(key)}.json"

    def _info(self, key: str, path: Path) -> ObjectInfo:
        stat = path.stat()
        sidecar: dict[str, Any] = {}
        meta_path = self._metadata_path(key)
        if meta_path.exists():
            sidecar = json.loads(meta_path.read_text(encoding="utf-8"))
        return ObjectInfo(
            key=key,
            size_bytes=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            metadata=sidecar.get("metadata", {}),
            storage_class=sidecar.get("storage_class"),
        )

    async def put(
        self,
        key: str,
        source_path: Path,
        storage_class: str | None = None,
        metadata: dict[str, str] | None = None
    ) -> ObjectInfo:
        """Store file in local storage."""
        if not source_path.exists():
            raise FileNotFoundError(f"Source file not found: {source_path}")

        target = self._object_path(key)
        tmp_target = target.with_name(f".{target.name}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source_path, tmp_target)
            os.replace(tmp_target, target)

            meta_path = self._metadata_path(key)
            meta_path.parent.mkdir(parents=True, exist_ok=True)
            meta_path.write_text(
                json.dumps({"metadata": metadata or {}, "storage_class": storage_class}, indent=2),
                encoding="utf-8",
            )
        except OSError as e:
            tmp_target.unlink(missing_ok=True)
            if e.errno in (errno.ENOSPC, errno.EDQUOT):
                raise CapacityError(f"No space left storing {key} in {self.backend_id}") from e
            raise TransientIOError(f"Could not store {key} in {self.backend_id}: {e}") from e

        logger.debug(f"Stored {source_path} as {key} in {self.backend_id}")
        return self._info(key, target)

    async def get(self, key: str, destination_path: Path) -> Path:
        """Retrieve file from local storage."""
        source = self._object_path(key)
        if not source.exists():
            raise FileNotFoundError(f"Storage key not found in {self.backend_id}: {key}")

        destination_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination_path)
        return destination_path

    async def list_objects(self, prefix: str = "") -> list[ObjectInfo]:
        """List files in local storage."""
        objects = []
        for path in self.base_path.rglob("*"):
            if not path.is_file():
                continue
            rel = path.relative_to(self.base_path)
            if rel.parts[0] == METADATA_DIR or path.name.endswith(".tmp"):
                continue
            key = rel.as_posix()
            if key.startswith(prefix):
                objects.append(self._info(key, path))

        objects.sort(key=lambda obj: obj.key)
        return objects

    async def delete(self, key: str) -> bool:
        """Delete file from local storage."""
        target = self._object_path(key)
        self._metadata_path(key).unlink(missing_ok=True)
        if not target.exists():
            return False
        target.unlink()
        logger.debug(f"Deleted {key} from {self.backend_id}")
        return True

    async def stat(self, key: str) -> ObjectInfo | None:
        target = self._object_path(key)
        if not target.is_file():
            return None
        return self._info(key, target)


class S3Backend(StorageBackend):
    """
    AWS S3-compatible storage backend.

    boto3 calls are blocking, so each one runs in a worker thread. Connection
    and throttling failures surface as :class:`TransientIOError`.
    """

    def __init__(self, backend_id: str, config: dict[str, Any]):
        super().__init__(backend_id, config)
        self.bucket_name = config["bucket_name"]
        self.prefix = config.get("prefix", "").strip("/")
        self.endpoint_url = config.get("endpoint_url")
        self._s3_client = config.get("client")
        logger.info(f"S3 backend initialized for bucket: {self.bucket_name}")

    @property
    def client(self):
        if self._s3_client is None:
            self._s3_client = boto3.client(
                "s3", region_name=self.config.get("aws_region"), endpoint_url=self.endpoint_url
            )
        return self._s3_client

    @property
    def location(self) -> str:
        return f"s3://{self.bucket_name}/{self.prefix}" if self.prefix else f"s3://{self.bucket_name}"

    def _full_key(self, key: str) -> str:
        key = _check_key(key)
        return f"{self.prefix}/{key}" if self.prefix else key

    def _strip_prefix(self, full_key: str) -> str:
        if self.prefix and full_key.startswith(self.prefix + "/"):
            return full_key[len(self.prefix) + 1:]
        return full_key

    async def _call(self, operation: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (ClientError, BotoCoreError, Boto3Error) as e:
            # upload_file wraps ClientError in S3UploadFailedError
            raise TransientIOError(
                f"S3 {operation} failed on {self.bucket_name}: {e}",
                details={"backend_id": self.backend_id, "operation": operation},
            ) from e

    async def put(
        self,
        key: str,
        source_path: Path,
        storage_class: str | None = None,
        metadata: dict[str, str] | None = None
    ) -> ObjectInfo:
        """Store file in S3."""
        if not source_path.exists():
            raise FileNotFoundError(f"Source file not found: {source_path}")

        extra_args: dict[str, Any] = {"Metadata": dict(metadata or {})}
        if storage_class:
            extra_args["StorageClass"] = storage_class

        await self._call(
            "put", self.client.upload_file,
            str(source_path), self.bucket_name, self._full_key(key), ExtraArgs=extra_args,
        )
        logger.info(f"Stored {source_path} in S3 as {self._full_key(key)} with storage class {storage_class}")
        return ObjectInfo(
            key=key,
            size_bytes=source_path.stat().st_size,
            modified_at=datetime.now(timezone.utc),
            metadata=dict(metadata or {}),
            storage_class=storage_class,
        )

    async def get(self, key: str, destination_path: Path) -> Path:
        """Retrieve file from S3."""
        destination_path.parent.mkdir(parents=True, exist_ok=True)
        await self._call(
            "get", self.client.download_file,
            self.bucket_name, self._full_key(key), str(destination_path),
        )
        return destination_path

    async def list_objects(self, prefix: str = "") -> list[ObjectInfo]:
        full_prefix = f"{self.prefix}/{prefix}" if self.prefix else prefix

        def _list() -> list[dict[str, Any]]:
            paginator = self.client.get_paginator("list_objects_v2")
            contents = []
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=full_prefix):
                contents.extend(page.get("Contents", []))
            return contents

        contents = await self._call("list", _list)
        objects = [
            ObjectInfo(
                key=self._strip_prefix(obj["Key"]),
                size_bytes=obj["Size"],
                modified_at=obj["LastModified"],
                storage_class=obj.get("StorageClass"),
            )
            for obj in contents
        ]
        objects.sort(key=lambda obj: obj.key)
        return objects

    async def delete(self, key: str) -> bool:
        """Delete file from S3."""
        if await self.stat(key) is None:
            return False
        await self._call("delete", self.client.delete_object, Bucket=self.bucket_name, Key=self._full_key(key))
        logger.info(f"Deleted {key} from S3")
        return True

    async def stat(self, key: str) -> ObjectInfo | None:
        try:
            head = await asyncio.to_thread(
                self.client.head_object, Bucket=self.bucket_name, Key=self._full_key(key)
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise TransientIOError(f"S3 stat failed on {self.bucket_name}: {e}") from e
        except BotoCoreError as e:
            raise TransientIOError(f"S3 stat failed on {self.bucket_name}: {e}") from e

        return ObjectInfo(
            key=key,
            size_bytes=head["ContentLength"],
            modified_at=head["LastModified"],
            metadata=head.get("Metadata", {}),
            storage_class=head.get("StorageClass"),
        )


# Factory function for creating storage backends
def create_storage_backend(backend_type: str, backend_id: str, config: dict[str, Any]) -> StorageBackend:
    """
    Factory function to create storage backend instances.

    Args:
        backend_type: Type of storage backend (local, s3)
        backend_id: Unique identifier for the backend, usually the region id
        config: Configuration parameters

    Returns:
        Storage backend instance
    """
    backend_map: dict[str, type[StorageBackend]] = {
        "local": LocalStorageBackend,
        "s3": S3Backend,
    }

    if backend_type not in backend_map:
        raise ValueError(f"Unknown storage backend type: {backend_type}")

    return backend_map[backend_type](backend_id, config)


def backend_for_region(region: Any) -> StorageBackend:
    """Build a backend from a :class:`~drvault.config.RegionConfig`."""
    if region.backend == "local":
        config = {"base_path": region.bucket_or_path, "region": region.region_id}
    else:
        config = {
            "bucket_name": region.bucket_or_path,
            "prefix": region.prefix,
            "endpoint_url": region.endpoint_url,
            "region": region.region_id,
        }
    return create_storage_backend(region.backend, region.region_id, config)
