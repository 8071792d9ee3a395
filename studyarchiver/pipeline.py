"""
Pipeline orchestrator for studyarchiver.

One pass: list sim bucket → discover studies → verify (concurrent) →
archive verified studies (one at a time).

Every per-study failure is recorded on the PassResult and logged; a pass
only raises for construction-time configuration errors.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from studyarchiver.archive import ArchiveExecutor, ArchiveResult
from studyarchiver.checksum import ChecksumVerifier, Md5ManifestVerifier
from studyarchiver.config import ArchiverConfig, BucketConfig, ConfigError
from studyarchiver.listing import ObjectListing, list_directory
from studyarchiver.locking import LockService, StorageLock
from studyarchiver.storage import GCSObjectStore, ObjectStore, RetryingObjectStore
from studyarchiver.study import discover_studies
from studyarchiver.utils import ProgressReporter, format_duration
from studyarchiver.verification import StudyVerifier, VerificationResult, VerificationStatus
from studyarchiver.zipper import DirectoryZipper, StorageZipper


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PassResult:
    """Summary of one discovery-through-archival pass."""

    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    discovered: List[str] = field(default_factory=list)
    verifications: List[VerificationResult] = field(default_factory=list)
    archives: List[ArchiveResult] = field(default_factory=list)
    error_message: Optional[str] = None

    def _count(self, status: VerificationStatus) -> int:
        return sum(1 for v in self.verifications if v.status == status)

    @property
    def verified(self) -> List[str]:
        return [v.study for v in self.verifications if v.status == VerificationStatus.VERIFIED]

    @property
    def not_ready_count(self) -> int:
        return self._count(VerificationStatus.NOT_READY)

    @property
    def verification_failed_count(self) -> int:
        return self._count(VerificationStatus.FAILED)

    @property
    def archived(self) -> List[str]:
        return [a.study for a in self.archives if a.success]

    @property
    def archive_failed(self) -> List[str]:
        return [a.study for a in self.archives if not a.success]

    @property
    def failures(self) -> int:
        """Verification failures plus archive failures. NotReady is not a failure."""
        return self.verification_failed_count + len(self.archive_failed) + (1 if self.error_message else 0)

    @property
    def success(self) -> bool:
        return self.failures == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "counts": {
                "discovered": len(self.discovered),
                "verified": len(self.verified),
                "not_ready": self.not_ready_count,
                "verification_failed": self.verification_failed_count,
                "archived": len(self.archived),
                "archive_failed": len(self.archive_failed),
                "failures": self.failures,
            },
            "verifications": [v.to_dict() for v in self.verifications],
            "archives": [a.to_dict() for a in self.archives],
            "error_message": self.error_message,
        }


class ArchivePipeline:
    """
    Main archival orchestrator.

    Collaborators default to implementations built on the given store;
    pass them explicitly to substitute other backends.
    """

    def __init__(
        self,
        store: ObjectStore,
        buckets: BucketConfig,
        checksum_verifier: Optional[ChecksumVerifier] = None,
        zipper: Optional[DirectoryZipper] = None,
        lock_service: Optional[LockService] = None,
        lock_ttl_seconds: int = 60 * 60,
        verify_concurrency: int = 8,
        checksum_concurrency: int = 8,
        progress: bool = False,
    ):
        """
        Args:
            store: Object store; wrap it in RetryingObjectStore for retries
            buckets: sim/study/lock roles

        Raises:
            ConfigError: If buckets or concurrency are invalid
        """
        buckets.validate()
        if verify_concurrency < 1 or checksum_concurrency < 1:
            raise ConfigError("concurrency values must be >= 1")

        self.store = store
        self.buckets = buckets
        self.checksum_verifier = checksum_verifier or Md5ManifestVerifier(store)
        self.zipper = zipper or StorageZipper(store)
        self.lock_service = lock_service or StorageLock(store, ttl_seconds=lock_ttl_seconds)
        self.lock_ttl_seconds = lock_ttl_seconds
        self.verify_concurrency = verify_concurrency
        self.checksum_concurrency = checksum_concurrency
        self.progress = ProgressReporter(enabled=progress)

        self.verifier = StudyVerifier(
            store,
            self.checksum_verifier,
            buckets,
            checksum_concurrency=checksum_concurrency,
            progress=self.progress,
        )
        self.executor = ArchiveExecutor(
            store,
            self.zipper,
            self.lock_service,
            buckets,
            progress=self.progress,
        )

    @classmethod
    def from_config(cls, config: ArchiverConfig, store: Optional[ObjectStore] = None) -> "ArchivePipeline":
        """Build a pipeline over Google Cloud Storage (or the given store) with retries applied."""
        config.validate()
        backend = store if store is not None else GCSObjectStore()
        return cls(
            RetryingObjectStore(backend, config.retry),
            config.buckets,
            lock_ttl_seconds=config.lock_ttl_seconds,
            verify_concurrency=config.verify_concurrency,
            checksum_concurrency=config.checksum_concurrency,
            progress=config.progress,
        )

    def with_buckets(self, **roles: str) -> "ArchivePipeline":
        """Return a new pipeline with bucket roles replaced; this one is unchanged."""
        return ArchivePipeline(
            self.store,
            self.buckets.with_buckets(**roles),
            checksum_verifier=self.checksum_verifier,
            zipper=self.zipper,
            lock_service=self.lock_service,
            lock_ttl_seconds=self.lock_ttl_seconds,
            verify_concurrency=self.verify_concurrency,
            checksum_concurrency=self.checksum_concurrency,
            progress=self.progress.enabled,
        )

    def list_sim(self) -> ObjectListing:
        return list_directory(self.store, self.buckets.sim)

    def find_verified_studies(self, result: Optional[PassResult] = None) -> PassResult:
        """
        List, discover and verify; no archival.

        Args:
            result: PassResult to fill in (a new one is created if omitted)

        Returns:
            PassResult with discovered and verifications set
        """
        result = result or PassResult(started_at=_utcnow())

        listing = self.list_sim()
        result.discovered = discover_studies(listing)
        self.progress.emit("discovered", count=len(result.discovered))
        logger.info(
            f"Discovered {len(result.discovered)} studies in gs://{self.buckets.sim}",
            extra={"event": "studies_discovered", "metadata": {"count": len(result.discovered)}},
        )

        result.verifications = self.verifier.verify_all(
            result.discovered, listing, concurrency=self.verify_concurrency
        )
        self.progress.emit("verified", count=len(result.verified))
        return result

    def run_pass(self) -> PassResult:
        """
        Run a single pass: verify everything, then archive verified studies in series.

        Returns:
            PassResult; per-study failures are recorded, not raised
        """
        start_time = time.time()
        result = PassResult(started_at=_utcnow())

        logger.info(
            f"Starting pass over gs://{self.buckets.sim}",
            extra={"event": "pass_started", "metadata": self.buckets.to_dict()},
        )

        try:
            self.find_verified_studies(result)
        except Exception as e:
            # Listing failed after retries; nothing was touched
            logger.error(
                f"Pass aborted before archival: {e}",
                extra={"event": "pass_listing_failed"},
                exc_info=True,
            )
            result.error_message = str(e)
            return self._finish(result, start_time)

        for verification in result.verifications:
            if verification.status != VerificationStatus.VERIFIED:
                continue
            result.archives.append(self.executor.run(verification))

        return self._finish(result, start_time)

    def _finish(self, result: PassResult, start_time: float) -> PassResult:
        result.ended_at = _utcnow()
        result.duration_seconds = time.time() - start_time

        summary = result.to_dict()["counts"]
        if result.success:
            logger.info(
                f"Pass completed in {format_duration(result.duration_seconds)}: "
                f"{summary['archived']} archived, {summary['not_ready']} not ready",
                extra={"event": "pass_completed", "metadata": summary},
            )
        else:
            logger.warning(
                f"Pass completed with {result.failures} failure(s) in {format_duration(result.duration_seconds)}",
                extra={"event": "pass_completed_with_failures", "metadata": summary},
            )
        return result
