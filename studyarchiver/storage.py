"""
ObjectStore - IO boundary for the remote object store.

Storage backends:
- Google Cloud Storage (production)
- In-memory (for testing and local dry runs)

RetryingObjectStore wraps any backend and applies the configured
RetryPolicy to every call. Retryable errors are classified by
studyarchiver.errors.is_transient; after the last attempt the backend's
error is re-raised unchanged.
"""

import base64
import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud import storage

from studyarchiver.config import RetryPolicy
from studyarchiver.errors import StorageError
from studyarchiver.utils import retry_with_backoff


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredObject:
    """An object as returned by a listing: its path and raw metadata."""
    name: str
    metadata: dict[str, Any] = field(default_factory=dict)


class ObjectStore(ABC):
    """
    Abstract base class for object store primitives.

    Implementations must provide methods to list, read, write and delete
    objects in named buckets.
    """

    @abstractmethod
    def list_objects(self, bucket: str, prefix: Optional[str] = None) -> list[StoredObject]:
        """
        List objects in a bucket.

        Args:
            bucket: Bucket name
            prefix: Only return objects whose path begins with prefix

        Returns:
            StoredObjects in the order the backend returns them
        """
        pass

    @abstractmethod
    def download(self, bucket: str, path: str) -> bytes:
        """Return the full contents of one object."""
        pass

    @abstractmethod
    def upload(self, bucket: str, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Create or overwrite one object."""
        pass

    @abstractmethod
    def create_if_absent(self, bucket: str, path: str, data: bytes, content_type: str = "application/json") -> bool:
        """
        Create an object only if no object exists at path.

        Returns:
            True if the object was created, False if it already existed
        """
        pass

    @abstractmethod
    def delete_files(self, bucket: str, prefix: str, force: bool = True) -> int:
        """
        Delete every object under prefix.

        Args:
            bucket: Bucket name
            prefix: Path prefix; must be non-empty
            force: Keep deleting after an individual failure and raise at the end

        Returns:
            Number of objects deleted
        """
        pass

    @abstractmethod
    def delete_file(self, bucket: str, path: str) -> None:
        """Delete one object."""
        pass


def _raise_collected(bucket: str, prefix: str, errors: list[Exception]) -> None:
    if errors:
        raise StorageError(
            f"{len(errors)} object(s) under gs://{bucket}/{prefix} could not be deleted: {errors[0]}"
        ) from errors[0]


class GCSObjectStore(ObjectStore):
    """Google Cloud Storage backend."""

    def __init__(self, client: Optional[storage.Client] = None):
        self.client = client or storage.Client()

    def list_objects(self, bucket: str, prefix: Optional[str] = None) -> list[StoredObject]:
        blobs = self.client.list_blobs(bucket, prefix=prefix or None)
        return [StoredObject(name=blob.name, metadata=_blob_metadata(blob)) for blob in blobs]

    def download(self, bucket: str, path: str) -> bytes:
        return self.client.bucket(bucket).blob(path).download_as_bytes()

    def upload(self, bucket: str, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self.client.bucket(bucket).blob(path).upload_from_string(data, content_type=content_type)

    def create_if_absent(self, bucket: str, path: str, data: bytes, content_type: str = "application/json") -> bool:
        blob = self.client.bucket(bucket).blob(path)
        try:
            # generation 0 means "only if the object does not exist yet"
            blob.upload_from_string(data, content_type=content_type, if_generation_match=0)
        except google_exceptions.PreconditionFailed:
            return False
        return True

    def delete_files(self, bucket: str, prefix: str, force: bool = True) -> int:
        if not prefix:
            raise StorageError("refusing to delete with an empty prefix")
        deleted = 0
        errors: list[Exception] = []
        for blob in self.client.list_blobs(bucket, prefix=prefix):
            try:
                blob.delete()
                deleted += 1
            except google_exceptions.NotFound:
                continue
            except Exception as e:
                if not force:
                    raise
                errors.append(e)
        _raise_collected(bucket, prefix, errors)
        return deleted

    def delete_file(self, bucket: str, path: str) -> None:
        self.client.bucket(bucket).blob(path).delete()


def _blob_metadata(blob: Any) -> dict[str, Any]:
    """Flatten the blob properties the pipeline reads into a plain dict."""
    updated = getattr(blob, "updated", None)
    return {
        "name": blob.name,
        "bucket": getattr(blob.bucket, "name", None),
        "size": blob.size,
        "md5Hash": blob.md5_hash,
        "crc32c": blob.crc32c,
        "contentType": blob.content_type,
        "generation": blob.generation,
        "updated": updated.isoformat() if updated else None,
    }


class InMemoryObjectStore(ObjectStore):
    """
    In-memory object store for testing.

    Objects are kept per bucket in insertion order. Metadata mirrors the
    fields GCSObjectStore reports, including a base64 md5Hash.
    """

    def __init__(self, buckets: Optional[dict[str, dict[str, bytes]]] = None):
        self._buckets: dict[str, dict[str, tuple[bytes, dict[str, Any]]]] = {}
        self._lock = threading.Lock()
        self._generation = 0
        for bucket, objects in (buckets or {}).items():
            self._buckets.setdefault(bucket, {})
            for path, data in objects.items():
                self.upload(bucket, path, data)

    def _metadata(self, bucket: str, path: str, data: bytes, content_type: str) -> dict[str, Any]:
        self._generation += 1
        return {
            "name": path,
            "bucket": bucket,
            "size": len(data),
            "md5Hash": base64.b64encode(hashlib.md5(data).digest()).decode("ascii"),
            "contentType": content_type,
            "generation": self._generation,
            "updated": datetime.now(timezone.utc).isoformat(),
        }

    def _objects(self, bucket: str) -> dict[str, tuple[bytes, dict[str, Any]]]:
        if bucket not in self._buckets:
            raise google_exceptions.NotFound(f"bucket {bucket} not found")
        return self._buckets[bucket]

    def create_bucket(self, bucket: str) -> None:
        with self._lock:
            self._buckets.setdefault(bucket, {})

    def paths(self, bucket: str) -> list[str]:
        """All object paths in a bucket (test helper)."""
        with self._lock:
            return list(self._buckets.get(bucket, {}))

    def list_objects(self, bucket: str, prefix: Optional[str] = None) -> list[StoredObject]:
        with self._lock:
            objects = self._objects(bucket)
            return [
                StoredObject(name=path, metadata=dict(meta))
                for path, (_, meta) in objects.items()
                if not prefix or path.startswith(prefix)
            ]

    def download(self, bucket: str, path: str) -> bytes:
        with self._lock:
            objects = self._objects(bucket)
            if path not in objects:
                raise google_exceptions.NotFound(f"gs://{bucket}/{path} not found")
            return objects[path][0]

    def upload(self, bucket: str, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        with self._lock:
            objects = self._buckets.setdefault(bucket, {})
            objects[path] = (bytes(data), self._metadata(bucket, path, data, content_type))

    def create_if_absent(self, bucket: str, path: str, data: bytes, content_type: str = "application/json") -> bool:
        with self._lock:
            objects = self._buckets.setdefault(bucket, {})
            if path in objects:
                return False
            objects[path] = (bytes(data), self._metadata(bucket, path, data, content_type))
            return True

    def delete_files(self, bucket: str, prefix: str, force: bool = True) -> int:
        if not prefix:
            raise StorageError("refusing to delete with an empty prefix")
        with self._lock:
            objects = self._objects(bucket)
            doomed = [path for path in objects if path.startswith(prefix)]
            for path in doomed:
                del objects[path]
            return len(doomed)

    def delete_file(self, bucket: str, path: str) -> None:
        with self._lock:
            objects = self._objects(bucket)
            if path not in objects:
                raise google_exceptions.NotFound(f"gs://{bucket}/{path} not found")
            del objects[path]


class RetryingObjectStore(ObjectStore):
    """Applies a RetryPolicy to every call on a wrapped ObjectStore."""

    def __init__(self, inner: ObjectStore, policy: Optional[RetryPolicy] = None):
        self.inner = inner
        self.policy = policy or RetryPolicy()

    def _call(self, description: str, func, *args, **kwargs):
        return retry_with_backoff(
            lambda: func(*args, **kwargs),
            policy=self.policy,
            description=description,
            log=logger,
        )

    def list_objects(self, bucket: str, prefix: Optional[str] = None) -> list[StoredObject]:
        return self._call(f"list gs://{bucket}/{prefix or ''}", self.inner.list_objects, bucket, prefix)

    def download(self, bucket: str, path: str) -> bytes:
        return self._call(f"download gs://{bucket}/{path}", self.inner.download, bucket, path)

    def upload(self, bucket: str, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        return self._call(f"upload gs://{bucket}/{path}", self.inner.upload, bucket, path, data, content_type)

    def create_if_absent(self, bucket: str, path: str, data: bytes, content_type: str = "application/json") -> bool:
        # A retried create may find its own earlier write; StorageLock checks the marker owner.
        return self._call(f"create gs://{bucket}/{path}", self.inner.create_if_absent, bucket, path, data, content_type)

    def delete_files(self, bucket: str, prefix: str, force: bool = True) -> int:
        return self._call(f"delete gs://{bucket}/{prefix}*", self.inner.delete_files, bucket, prefix, force)

    def delete_file(self, bucket: str, path: str) -> None:
        return self._call(f"delete gs://{bucket}/{path}", self.inner.delete_file, bucket, path)
