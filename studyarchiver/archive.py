"""
ArchiveExecutor - zip a verified study, then delete the original.

Order of operations for one study:
1. Refuse anything that is not VERIFIED, and any empty or root deletion prefix
2. Acquire the study lock (fail fast if held); a lock is only released by
   the process that acquired it
3. Zip every object under the study prefix into <study>.zip in the study bucket
4. Only after a successful zip: delete the prefix in the sim bucket, then the
   lock marker

Any failure stops the sequence before step 4, so the original objects are
left untouched. The final delete is the only irreversible step.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from google.api_core import exceptions as google_exceptions

from studyarchiver.config import BucketConfig
from studyarchiver.errors import LockHeldError, SafetyViolation
from studyarchiver.locking import LockService
from studyarchiver.storage import ObjectStore
from studyarchiver.study import archive_path, source_prefix
from studyarchiver.utils import ProgressReporter
from studyarchiver.verification import VerificationResult, VerificationStatus
from studyarchiver.zipper import DirectoryZipper, ZipRequest, ZipResult


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ArchiveResult:
    """Result of archiving one study."""

    study: str
    success: bool
    archive_path: Optional[str] = None
    zip_result: Optional[ZipResult] = None
    deleted_count: int = 0
    error: Optional[BaseException] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "study": self.study,
            "success": self.success,
            "archive_path": self.archive_path,
            "zip": self.zip_result.to_dict() if self.zip_result else None,
            "deleted_count": self.deleted_count,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


def check_deletion_prefix(prefix: str, descriptor: str) -> None:
    """Raise SafetyViolation for a prefix that would delete the whole bucket."""
    if len(prefix) == 0 or prefix == "/":
        raise SafetyViolation(f"will not delete entire bucket, study descriptor: {descriptor!r}")


class ArchiveExecutor:
    """Zips verified studies into the study bucket and removes the originals."""

    def __init__(
        self,
        store: ObjectStore,
        zipper: DirectoryZipper,
        lock_service: LockService,
        buckets: BucketConfig,
        progress: Optional[ProgressReporter] = None,
    ):
        self.store = store
        self.zipper = zipper
        self.lock_service = lock_service
        self.buckets = buckets
        self.progress = progress or ProgressReporter()

    def lock_study(self, descriptor: str) -> None:
        """
        Take the study lock.

        Raises:
            LockHeldError: If another process holds the study lock
            Exception: Storage errors from the lock service; nothing is held
        """
        if not self.lock_service.acquire(self.buckets.lock, descriptor):
            raise LockHeldError(f"study is locked by another process: {descriptor}")
        self.progress.emit("locked", descriptor)

    def zip_study(self, descriptor: str) -> ZipResult:
        """Write a locked study's .zip copy to the study bucket."""
        request = ZipRequest(
            from_bucket=self.buckets.sim,
            from_path=source_prefix(descriptor),
            to_bucket=self.buckets.study,
            to_path=archive_path(descriptor),
        )
        result = self.zipper.zip_directory(request)
        self.progress.emit("zipped", descriptor, **result.to_dict())
        return result

    def delete_study(self, descriptor: str) -> int:
        """
        Delete a study's objects and its lock marker.

        Returns:
            Number of objects deleted from the sim bucket

        Raises:
            SafetyViolation: If the prefix is empty or the bucket root
        """
        prefix = source_prefix(descriptor)
        check_deletion_prefix(prefix, descriptor)
        deleted = self.store.delete_files(self.buckets.sim, prefix, force=True)
        try:
            self.store.delete_file(self.buckets.lock, descriptor)
        except google_exceptions.NotFound:
            logger.warning(
                f"Lock marker for {descriptor} was already gone",
                extra={"event": "lock_marker_missing", "study": descriptor},
            )
        self.progress.emit("deleted", descriptor, deleted=deleted)
        return deleted

    def _release_after_failure(self, descriptor: str) -> None:
        try:
            self.lock_service.release(self.buckets.lock, descriptor)
        except Exception as e:
            # The lock TTL reclaims the marker if release fails
            logger.warning(
                f"Could not release lock for {descriptor}: {e}",
                extra={"event": "lock_release_failed", "study": descriptor},
            )

    def execute(self, verification: VerificationResult) -> ArchiveResult:
        """
        Archive one verified study.

        Args:
            verification: VerificationResult with status VERIFIED

        Returns:
            Successful ArchiveResult

        Raises:
            SafetyViolation: Study not verified, or unsafe deletion prefix
            LockHeldError: Study locked by another process
            Exception: Any zip or storage error; originals are untouched
                unless the zip already succeeded
        """
        descriptor = verification.study
        if verification.status != VerificationStatus.VERIFIED:
            raise SafetyViolation(
                f"refusing to archive unverified study {descriptor} (status: {verification.status.value})"
            )

        started_at = _utcnow()
        check_deletion_prefix(source_prefix(descriptor), descriptor)

        self.lock_study(descriptor)
        try:
            zip_result = self.zip_study(descriptor)
        except Exception:
            self._release_after_failure(descriptor)
            raise

        deleted = self.delete_study(descriptor)

        return ArchiveResult(
            study=descriptor,
            success=True,
            archive_path=zip_result.to_path,
            zip_result=zip_result,
            deleted_count=deleted,
            started_at=started_at,
            ended_at=_utcnow(),
        )

    def run(self, verification: VerificationResult) -> ArchiveResult:
        """
        Run execute() and capture any error into a failed ArchiveResult.

        Returns:
            ArchiveResult; never raises
        """
        descriptor = verification.study
        started_at = _utcnow()
        try:
            result = self.execute(verification)
        except Exception as e:
            log = logger.info if isinstance(e, LockHeldError) else logger.error
            log(
                f"error processing: {descriptor}: {e}",
                extra={"event": "archive_failed", "study": descriptor, "metadata": {"error_type": type(e).__name__}},
                exc_info=not isinstance(e, (LockHeldError, SafetyViolation)),
            )
            return ArchiveResult(
                study=descriptor,
                success=False,
                error=e,
                started_at=started_at,
                ended_at=_utcnow(),
            )

        logger.info(
            f"zipped and deleted: {descriptor}",
            extra={"event": "archive_completed", "study": descriptor, "metadata": result.to_dict()},
        )
        return result
