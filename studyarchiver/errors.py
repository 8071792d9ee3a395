"""
Error classes for studyarchiver.

These error types enable retry classification at the storage boundary:
- TransientError: Safe to retry (rate limits, network issues, 5xx responses)
- PermanentError: Do not retry (invalid input, unsafe deletes, held locks)

Per-study errors are caught at the pipeline boundary and recorded on the
study's result; they never abort a pass.
"""

from google.api_core import exceptions as google_exceptions


class StudyArchiverError(Exception):
    """Base exception for studyarchiver."""
    pass


class TransientError(StudyArchiverError):
    """
    Transient error - safe to retry.

    Storage calls that raise TransientError are retried
    according to the configured RetryPolicy.
    """
    pass


class PermanentError(StudyArchiverError):
    """
    Permanent error - do not retry.

    Raised for conditions another attempt cannot fix.
    """
    pass


class TransientStorageError(TransientError):
    """Retryable network or server fault from the object store."""
    pass


class StorageError(PermanentError):
    """Non-retryable object store failure (e.g. partial prefix delete)."""
    pass


class ValidationError(PermanentError):
    """Invalid argument, such as an empty bucket name. Fails fast."""
    pass


class DescriptorError(PermanentError):
    """Study descriptor could not be parsed or has no configuration count."""
    pass


class NotReadyError(PermanentError):
    """
    Expected manifests are missing.

    This is the normal state of a study that is still being written;
    it excludes the study from the current pass and is not logged as an error.
    """

    def __init__(self, study: str, missing: list[str]):
        self.study = study
        self.missing = list(missing)
        super().__init__(f"not ready, study: {study} ({len(self.missing)} manifests missing)")


class VerificationFailure(PermanentError):
    """One or more manifest checksums failed for a study."""

    def __init__(self, study: str, failed_manifests: list[str]):
        self.study = study
        self.failed_manifests = list(failed_manifests)
        super().__init__(f"md5 verification failed for study: {study}")


class SafetyViolation(PermanentError):
    """A destructive action was refused (empty/root prefix, unverified study)."""
    pass


class LockHeldError(PermanentError):
    """The study lock is held by another process for this pass."""
    pass


# Google API errors that are worth another attempt (408 is matched by code)
_RETRYABLE_GOOGLE_ERRORS = (
    google_exceptions.TooManyRequests,
    google_exceptions.InternalServerError,
    google_exceptions.BadGateway,
    google_exceptions.ServiceUnavailable,
    google_exceptions.GatewayTimeout,
)


def is_transient(error: BaseException) -> bool:
    """
    Classify an exception as retryable.

    Args:
        error: Exception raised by a storage call

    Returns:
        True for TransientError, builtin timeouts/connection errors and
        Google API 408/429/5xx responses
    """
    if isinstance(error, PermanentError):
        return False
    if isinstance(error, TransientError):
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    if isinstance(error, google_exceptions.GoogleAPICallError) and error.code == 408:
        return True
    return isinstance(error, _RETRYABLE_GOOGLE_ERRORS)
