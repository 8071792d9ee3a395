"""
Study verification: readiness + checksum orchestration.

verify_study() decides whether one study may be archived:

1. Download and parse the descriptor to get the configuration count
2. Derive the expected manifest paths
3. If any manifest is missing from the listing -> NOT_READY
   (the checksum verifier is never called)
4. Otherwise check every manifest concurrently and wait for all of them
5. VERIFIED only if every check passed, else FAILED

verify_all() fans verify_study() out across studies with a fixed
concurrency. Failures are captured on each VerificationResult and never
raised to the caller.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

from studyarchiver.checksum import ChecksumCheck, ChecksumVerifier
from studyarchiver.config import BucketConfig
from studyarchiver.errors import NotReadyError, VerificationFailure
from studyarchiver.listing import ObjectListing
from studyarchiver.storage import ObjectStore
from studyarchiver.study import StudyConfig, manifest_paths
from studyarchiver.utils import ProgressReporter


logger = logging.getLogger(__name__)


class VerificationStatus(str, Enum):
    """Verification outcome for one study."""
    NOT_READY = "not_ready"
    FAILED = "failed"
    VERIFIED = "verified"


@dataclass(frozen=True)
class VerificationResult:
    """
    Verification outcome for one study.

    Attributes:
        study: Descriptor path
        status: NOT_READY, FAILED or VERIFIED
        manifests: Expected manifest paths (empty if the descriptor was unreadable)
        missing_manifests: Expected manifests absent from the listing
        checks: One ChecksumCheck per manifest, in manifest order
        error: Exception explaining a NOT_READY or FAILED status
    """
    study: str
    status: VerificationStatus
    manifests: tuple[str, ...] = ()
    missing_manifests: tuple[str, ...] = ()
    checks: tuple[ChecksumCheck, ...] = ()
    error: Optional[BaseException] = None

    @property
    def verified(self) -> bool:
        return self.status == VerificationStatus.VERIFIED

    @property
    def failed_manifests(self) -> tuple[str, ...]:
        return tuple(check.manifest for check in self.checks if not check.ok)

    def to_dict(self) -> dict[str, Any]:
        return {
            "study": self.study,
            "status": self.status.value,
            "manifests": list(self.manifests),
            "missing_manifests": list(self.missing_manifests),
            "failed_manifests": list(self.failed_manifests),
            "error": str(self.error) if self.error else None,
        }


def all_exist(paths: Iterable[str], listing: ObjectListing) -> bool:
    """True if every path is a key of the listing."""
    return all(path in listing for path in paths)


def all_true(conditions: Sequence[bool]) -> bool:
    """True if every condition is truthy (an empty sequence is True)."""
    return all(conditions)


class StudyVerifier:
    """Runs readiness and checksum checks for studies in the sim bucket."""

    def __init__(
        self,
        store: ObjectStore,
        checksum_verifier: ChecksumVerifier,
        buckets: BucketConfig,
        checksum_concurrency: int = 8,
        progress: Optional[ProgressReporter] = None,
    ):
        self.store = store
        self.checksum_verifier = checksum_verifier
        self.buckets = buckets
        self.checksum_concurrency = checksum_concurrency
        self.progress = progress or ProgressReporter()

    def load_study_config(self, descriptor: str) -> StudyConfig:
        """Download a descriptor from the sim bucket and parse it."""
        return StudyConfig.from_bytes(self.store.download(self.buckets.sim, descriptor))

    def _check_manifest(self, manifest: str) -> ChecksumCheck:
        try:
            check = self.checksum_verifier.verify(self.buckets.sim, manifest)
        except Exception as e:
            check = ChecksumCheck(manifest=manifest, ok=False, detail=f"verification error: {e}")
        self.progress.emit("checksum", manifest, ok=check.ok, detail=check.detail)
        return check

    def check_manifests(self, manifests: Sequence[str]) -> tuple[ChecksumCheck, ...]:
        """
        Check every manifest concurrently.

        All checks run to completion even once one has failed; results are
        returned in manifest order.
        """
        if not manifests:
            return ()
        workers = min(self.checksum_concurrency, len(manifests))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="checksum") as executor:
            return tuple(executor.map(self._check_manifest, manifests))

    def verify_study(self, descriptor: str, listing: ObjectListing) -> VerificationResult:
        """
        Determine whether a study is complete and passes its md5 checks.

        Args:
            descriptor: /path/to/study/config.json
            listing: Listing of the sim bucket from list_directory()

        Returns:
            VerificationResult; errors are captured, not raised
        """
        self.progress.emit("verifying", descriptor)

        try:
            config = self.load_study_config(descriptor)
        except Exception as e:
            logger.warning(
                f"Could not read study descriptor {descriptor}: {e}",
                extra={"event": "descriptor_failed", "study": descriptor},
            )
            return VerificationResult(study=descriptor, status=VerificationStatus.FAILED, error=e)

        manifests = manifest_paths(descriptor, config.configuration_count)
        missing = tuple(m for m in manifests if m not in listing)
        self.progress.emit("readiness", descriptor, expected=len(manifests), missing=len(missing))

        if missing:
            logger.info(
                f"Study not ready: {descriptor} ({len(missing)} of {len(manifests)} manifests missing)",
                extra={"event": "study_not_ready", "study": descriptor},
            )
            return VerificationResult(
                study=descriptor,
                status=VerificationStatus.NOT_READY,
                manifests=manifests,
                missing_manifests=missing,
                error=NotReadyError(descriptor, list(missing)),
            )

        checks = self.check_manifests(manifests)
        if not all_true([check.ok for check in checks]):
            failure = VerificationFailure(descriptor, [c.manifest for c in checks if not c.ok])
            logger.warning(
                str(failure),
                extra={
                    "event": "study_verification_failed",
                    "study": descriptor,
                    "metadata": {"checks": [c.to_dict() for c in checks if not c.ok]},
                },
            )
            return VerificationResult(
                study=descriptor,
                status=VerificationStatus.FAILED,
                manifests=manifests,
                checks=checks,
                error=failure,
            )

        logger.info(
            f"Study verified: {descriptor}",
            extra={"event": "study_verified", "study": descriptor},
        )
        return VerificationResult(
            study=descriptor,
            status=VerificationStatus.VERIFIED,
            manifests=manifests,
            checks=checks,
        )

    def _verify_captured(self, descriptor: str, listing: ObjectListing) -> VerificationResult:
        try:
            return self.verify_study(descriptor, listing)
        except Exception as e:
            logger.error(
                f"Unexpected error verifying {descriptor}: {e}",
                extra={"event": "study_verification_error", "study": descriptor},
                exc_info=True,
            )
            return VerificationResult(study=descriptor, status=VerificationStatus.FAILED, error=e)

    def verify_all(
        self,
        studies: Sequence[str],
        listing: ObjectListing,
        concurrency: int = 8,
    ) -> list[VerificationResult]:
        """
        Verify many studies concurrently.

        Args:
            studies: Descriptor paths from discover_studies()
            listing: Shared, read-only listing of the sim bucket
            concurrency: Maximum studies verified at once

        Returns:
            One VerificationResult per study, in the order given
        """
        if not studies:
            return []
        workers = min(concurrency, len(studies))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="verify") as executor:
            return list(executor.map(lambda s: self._verify_captured(s, listing), studies))
