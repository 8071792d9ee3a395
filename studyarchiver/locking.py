"""
Study locks - TTL-bounded mutual exclusion between archiver processes.

A lock is a marker object in the lock bucket, keyed by the study's
descriptor path. Acquisition never waits: a live marker means another
process owns the study and acquire() returns False at once. A marker past
its expiry is treated as abandoned and replaced.
"""

import json
import logging
import socket
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

from google.api_core import exceptions as google_exceptions

from studyarchiver.config import DEFAULT_LOCK_TTL_SECONDS
from studyarchiver.storage import ObjectStore


logger = logging.getLogger(__name__)


class LockService(ABC):
    """Non-blocking, TTL-bounded lock keyed by (bucket, key)."""

    @abstractmethod
    def acquire(self, bucket: str, key: str) -> bool:
        """
        Try to take the lock.

        Returns:
            True if acquired, False if another holder owns it
        """
        pass

    @abstractmethod
    def release(self, bucket: str, key: str) -> None:
        """Drop the lock. Releasing a lock that is not held is a no-op."""
        pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageLock(LockService):
    """Lock markers stored as objects, created with a create-if-absent precondition."""

    def __init__(self, store: ObjectStore, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS, owner: Optional[str] = None):
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.owner = owner or f"{socket.gethostname()}:{uuid.uuid4().hex[:12]}"

    def _marker(self) -> bytes:
        now = _utcnow()
        return json.dumps({
            "owner": self.owner,
            "acquired_at": now.isoformat(),
            "expires_at": (now + self.ttl).isoformat(),
        }).encode("utf-8")

    def _read_marker(self, bucket: str, key: str) -> Optional[dict]:
        """Current marker body, None if there is no marker, {} if it is unreadable."""
        try:
            marker = json.loads(self.store.download(bucket, key).decode("utf-8"))
        except google_exceptions.NotFound:
            return None
        except (UnicodeDecodeError, ValueError):
            marker = None
        if not isinstance(marker, dict):
            logger.warning(
                f"Unreadable lock marker gs://{bucket}/{key}; treating as expired",
                extra={"event": "lock_marker_unreadable", "study": key},
            )
            return {}
        return marker

    @staticmethod
    def _is_expired(marker: Optional[dict]) -> bool:
        if not marker:
            return True
        try:
            expires_at = datetime.fromisoformat(marker["expires_at"])
        except (KeyError, TypeError, ValueError):
            return True
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= _utcnow()

    def _is_own(self, marker: Optional[dict]) -> bool:
        return bool(marker) and marker.get("owner") == self.owner

    def acquire(self, bucket: str, key: str) -> bool:
        if self.store.create_if_absent(bucket, key, self._marker()):
            logger.debug(f"Acquired lock gs://{bucket}/{key}", extra={"event": "lock_acquired", "study": key})
            return True

        marker = self._read_marker(bucket, key)
        # A retried create can find the marker its own first attempt wrote
        if self._is_own(marker):
            logger.debug(f"Lock marker gs://{bucket}/{key} is already ours", extra={"event": "lock_reclaimed", "study": key})
            return True
        if not self._is_expired(marker):
            logger.info(f"Lock held by another process: gs://{bucket}/{key}", extra={"event": "lock_held", "study": key})
            return False

        logger.warning(f"Replacing expired lock gs://{bucket}/{key}", extra={"event": "lock_expired", "study": key})
        try:
            self.store.delete_file(bucket, key)
        except google_exceptions.NotFound:
            pass
        if self.store.create_if_absent(bucket, key, self._marker()):
            return True
        # Another process may win the race for the replacement marker
        return self._is_own(self._read_marker(bucket, key))

    def release(self, bucket: str, key: str) -> None:
        try:
            self.store.delete_file(bucket, key)
        except google_exceptions.NotFound:
            pass
        logger.debug(f"Released lock gs://{bucket}/{key}", extra={"event": "lock_released", "study": key})
