"""
Directory zipper - packages every object under a prefix into one .zip object.

zip_directory() is the contract ArchiveExecutor depends on. StorageZipper is
the default implementation: it reads each object through the ObjectStore,
builds the archive in memory and uploads it to the destination bucket.
"""

import io
import logging
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from studyarchiver.errors import StorageError
from studyarchiver.storage import ObjectStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ZipRequest:
    """Source prefix and destination object of one archive."""
    from_bucket: str
    from_path: str
    to_bucket: str
    to_path: str


@dataclass(frozen=True)
class ZipResult:
    """What was written to the destination bucket."""
    to_bucket: str
    to_path: str
    file_count: int
    archive_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "to_bucket": self.to_bucket,
            "to_path": self.to_path,
            "file_count": self.file_count,
            "archive_bytes": self.archive_bytes,
        }


class DirectoryZipper(ABC):
    """Packages a prefix into a single archive object."""

    @abstractmethod
    def zip_directory(self, request: ZipRequest) -> ZipResult:
        """
        Create the archive.

        Raises:
            Exception: Any failure; the source prefix is never modified
        """
        pass


class StorageZipper(DirectoryZipper):
    """In-memory zip of objects read from, and written to, an ObjectStore."""

    def __init__(self, store: ObjectStore, compression: int = zipfile.ZIP_DEFLATED):
        self.store = store
        self.compression = compression

    def zip_directory(self, request: ZipRequest) -> ZipResult:
        objects = self.store.list_objects(request.from_bucket, request.from_path)
        if not objects:
            raise StorageError(f"nothing to zip under gs://{request.from_bucket}/{request.from_path}")

        written = 0
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, mode="w", compression=self.compression) as archive:
            for obj in objects:
                # Entries are stored relative to the study directory
                arcname = obj.name[len(request.from_path):]
                if not arcname or arcname.endswith("/"):
                    continue
                archive.writestr(arcname, self.store.download(request.from_bucket, obj.name))
                written += 1

        payload = buffer.getvalue()
        self.store.upload(request.to_bucket, request.to_path, payload, content_type="application/zip")
        logger.info(
            f"Wrote gs://{request.to_bucket}/{request.to_path} ({written} files, {len(payload)} bytes)",
            extra={"event": "zip_written", "metadata": {"files": written, "bytes": len(payload)}},
        )
        return ZipResult(
            to_bucket=request.to_bucket,
            to_path=request.to_path,
            file_count=written,
            archive_bytes=len(payload),
        )
