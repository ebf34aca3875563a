"""Object store backends for backup generations.

Keys are POSIX-style strings. ``list`` matches on a raw string prefix like
S3 does; the ``*_recursive`` operations treat their prefix as a folder.
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pg_backctl.exceptions import StorageError
from pg_backctl.schemas.backup import ObjectInfo
from pg_backctl.schemas.request import AwsCredentials

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per call
DELETE_BATCH_SIZE = 1000


def folder_prefix(prefix: str) -> str:
    """Normalise a folder prefix so it only matches keys inside the folder."""
    prefix = prefix.strip("/")
    return f"{prefix}/" if prefix else ""


def join_key(*parts: str) -> str:
    """Join key segments with single slashes, skipping empty segments."""
    return "/".join(part.strip("/") for part in parts if part and part.strip("/"))


class ObjectStore(ABC):
    """Abstract backup store."""

    @abstractmethod
    async def list(self, prefix: str = "") -> List[ObjectInfo]:
        """List every object whose key starts with ``prefix``."""

    @abstractmethod
    async def get(self, key: str, destination: Path) -> Path:
        """Download a single object to ``destination``."""

    @abstractmethod
    async def put(self, source: Path, key: str) -> None:
        """Upload a single file."""

    @abstractmethod
    async def delete(self, keys: List[str]) -> None:
        """Delete the given keys."""

    async def get_recursive(self, prefix: str, destination: Path) -> List[Path]:
        """Download every object in folder ``prefix`` under ``destination``.

        Relative structure below the prefix is preserved.
        """
        folder = folder_prefix(prefix)
        objects = await self.list(folder)
        if not objects:
            raise StorageError(f"No objects found under {prefix!r}")

        downloaded = []
        for obj in objects:
            target = Path(destination) / obj.key[len(folder):]
            downloaded.append(await self.get(obj.key, target))
        logger.info("Fetched %d objects from %s", len(downloaded), prefix)
        return downloaded

    async def put_recursive(self, source: Path, prefix: str) -> int:
        """Upload every file under ``source`` into folder ``prefix``."""
        source = Path(source)
        count = 0
        for path in sorted(p for p in source.rglob("*") if p.is_file()):
            await self.put(path, join_key(prefix, path.relative_to(source).as_posix()))
            count += 1
        logger.info("Uploaded %d files to %s", count, prefix)
        return count

    async def delete_recursive(self, prefix: str) -> int:
        """Delete every object in folder ``prefix``."""
        folder = folder_prefix(prefix)
        if not folder:
            raise StorageError("Refusing to delete the whole store namespace")
        keys = [obj.key for obj in await self.list(folder)]
        if keys:
            await self.delete(keys)
        logger.info("Deleted %d objects under %s", len(keys), prefix)
        return len(keys)


class LocalObjectStore(ObjectStore):
    """Store that maps keys onto a directory tree."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    def _path(self, key: str) -> Path:
        return self.base_path / key

    async def list(self, prefix: str = "") -> List[ObjectInfo]:
        if not self.base_path.is_dir():
            return []

        result = []
        for path in self.base_path.rglob("*"):
            if not path.is_file():
                continue
            key = path.relative_to(self.base_path).as_posix()
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            result.append(
                ObjectInfo(
                    key=key,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, UTC),
                    size=stat.st_size,
                )
            )
        return result

    async def get(self, key: str, destination: Path) -> Path:
        source = self._path(key)
        if not source.is_file():
            raise StorageError(f"Object not found: {key}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copy2, source, destination)
        return destination

    async def put(self, source: Path, key: str) -> None:
        dest = self._path(key)
        if dest.resolve() == Path(source).resolve():
            return
        dest.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copy2, source, dest)

    async def delete(self, keys: List[str]) -> None:
        for key in keys:
            path = self._path(key)
            if path.exists():
                path.unlink()
        # Drop folders emptied by the delete
        for key in keys:
            parent = self._path(key).parent
            while parent != self.base_path and parent.is_dir() and not any(parent.iterdir()):
                parent.rmdir()
                parent = parent.parent


class S3ObjectStore(ObjectStore):
    """S3-compatible store (AWS, MinIO, Ceph...) accessed through boto3."""

    def __init__(
        self,
        bucket: str,
        credentials: AwsCredentials,
        endpoint: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        self.bucket = bucket
        self.credentials = credentials
        self.endpoint = endpoint
        self._client = client

    def _get_client(self) -> Any:
        """Get or create the S3 client."""
        if self._client is None:
            kwargs: Dict[str, Any] = {
                "aws_access_key_id": self.credentials.access_key,
                "aws_secret_access_key": self.credentials.secret_key,
                "region_name": self.credentials.region,
            }
            if self.endpoint:
                kwargs["endpoint_url"] = self.endpoint
            self._client = boto3.client("s3", **kwargs)
        return self._client

    async def list(self, prefix: str = "") -> List[ObjectInfo]:
        client = self._get_client()

        def _list() -> List[ObjectInfo]:
            result = []
            paginator = client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    if obj["Key"].endswith("/"):
                        continue
                    result.append(
                        ObjectInfo(
                            key=obj["Key"],
                            last_modified=obj["LastModified"],
                            size=obj.get("Size", 0),
                        )
                    )
            return result

        try:
            return await asyncio.to_thread(_list)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to list s3://{self.bucket}/{prefix}: {e}")

    async def get(self, key: str, destination: Path) -> Path:
        client = self._get_client()
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            await asyncio.to_thread(client.download_file, self.bucket, key, str(destination))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to download s3://{self.bucket}/{key}: {e}")
        return destination

    async def put(self, source: Path, key: str) -> None:
        client = self._get_client()
        try:
            await asyncio.to_thread(client.upload_file, str(source), self.bucket, key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload {source} to s3://{self.bucket}/{key}: {e}")

    async def delete(self, keys: List[str]) -> None:
        client = self._get_client()
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            try:
                response = await asyncio.to_thread(
                    client.delete_objects,
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (BotoCoreError, ClientError) as e:
                raise StorageError(f"Failed to delete objects from s3://{self.bucket}: {e}")
            errors = response.get("Errors", [])
            if errors:
                raise StorageError(
                    f"Failed to delete {len(errors)} objects from s3://{self.bucket}, "
                    f"first: {errors[0].get('Key')} ({errors[0].get('Message')})"
                )
