"""Tests for ArchiveExecutor: zip, then delete, with lock and safety checks."""

import logging
from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as google_exceptions

from studyarchiver.errors import LockHeldError, SafetyViolation, StorageError
from studyarchiver.archive import ArchiveExecutor, check_deletion_prefix
from studyarchiver.config import RetryPolicy
from studyarchiver.locking import StorageLock
from studyarchiver.storage import InMemoryObjectStore, RetryingObjectStore
from studyarchiver.verification import VerificationResult, VerificationStatus
from studyarchiver.zipper import DirectoryZipper, StorageZipper

from conftest import LOCK, SIM, STUDY, add_study


def verified(descriptor):
    return VerificationResult(study=descriptor, status=VerificationStatus.VERIFIED)


@pytest.fixture
def executor(store, buckets):
    return ArchiveExecutor(store, StorageZipper(store), StorageLock(store), buckets)


class TestCheckDeletionPrefix:
    @pytest.mark.parametrize("prefix", ["", "/"])
    def test_root_prefixes_rejected(self, prefix):
        with pytest.raises(SafetyViolation, match="will not delete entire bucket"):
            check_deletion_prefix(prefix, "config.json")

    def test_study_prefix_allowed(self):
        check_deletion_prefix("studyA/", "studyA/config.json")


class TestExecute:
    def test_zip_then_delete(self, store, executor):
        descriptor = add_study(store, "studyA", configurations=2)
        add_study(store, "studyB", configurations=1)

        result = executor.execute(verified(descriptor))

        assert result.success
        assert result.archive_path == "studyA.zip"
        assert result.deleted_count == 5
        assert "studyA.zip" in store.paths(STUDY)
        assert not [p for p in store.paths(SIM) if p.startswith("studyA/")]
        assert "studyB/config.json" in store.paths(SIM)
        assert store.paths(LOCK) == []

    @pytest.mark.parametrize("status", [VerificationStatus.NOT_READY, VerificationStatus.FAILED])
    def test_unverified_study_refused(self, store, executor, status):
        descriptor = add_study(store, "studyA", configurations=1)
        with pytest.raises(SafetyViolation, match="unverified"):
            executor.execute(VerificationResult(study=descriptor, status=status))
        assert store.paths(STUDY) == []
        assert descriptor in store.paths(SIM)

    @pytest.mark.parametrize("descriptor", ["config.json", "/config.json"])
    def test_root_descriptor_never_deletes(self, store, buckets, descriptor):
        store.upload(SIM, descriptor, b'{"configurations": []}')
        store.upload(SIM, "other/data.csv", b"keep")
        zipper = MagicMock(spec=DirectoryZipper)
        lock = MagicMock()
        executor = ArchiveExecutor(store, zipper, lock, buckets)

        with pytest.raises(SafetyViolation):
            executor.execute(verified(descriptor))

        zipper.zip_directory.assert_not_called()
        lock.acquire.assert_not_called()
        assert "other/data.csv" in store.paths(SIM)

    def test_delete_study_refuses_root(self, store, executor):
        store.upload(SIM, "x/data.csv", b"keep")
        with pytest.raises(SafetyViolation):
            executor.delete_study("config.json")
        assert store.paths(SIM) == ["x/data.csv"]

    def test_failed_zip_never_deletes(self, store, buckets):
        descriptor = add_study(store, "studyA", configurations=1)
        before = store.paths(SIM)
        zipper = MagicMock(spec=DirectoryZipper)
        zipper.zip_directory.side_effect = StorageError("upload failed")
        executor = ArchiveExecutor(store, zipper, StorageLock(store), buckets)

        with pytest.raises(StorageError):
            executor.execute(verified(descriptor))

        assert store.paths(SIM) == before
        assert store.paths(LOCK) == []

    def test_held_lock_fails_fast(self, store, buckets):
        descriptor = add_study(store, "studyA", configurations=1)
        StorageLock(store, owner="other").acquire(LOCK, descriptor)
        zipper = MagicMock(spec=DirectoryZipper)
        executor = ArchiveExecutor(store, zipper, StorageLock(store, owner="me"), buckets)

        with pytest.raises(LockHeldError):
            executor.execute(verified(descriptor))

        zipper.zip_directory.assert_not_called()
        assert descriptor in store.paths(LOCK)

    def test_missing_lock_marker_after_delete_is_tolerated(self, store, buckets):
        descriptor = add_study(store, "studyA", configurations=1)
        lock = MagicMock()
        lock.acquire.return_value = True
        executor = ArchiveExecutor(store, StorageZipper(store), lock, buckets)

        result = executor.execute(verified(descriptor))

        assert result.success
        assert "studyA.zip" in store.paths(STUDY)

    def test_progress_stages(self, store, buckets):
        descriptor = add_study(store, "studyA", configurations=1)
        progress = MagicMock()
        ArchiveExecutor(store, StorageZipper(store), StorageLock(store), buckets, progress=progress).execute(
            verified(descriptor)
        )
        assert [c.args[0] for c in progress.emit.call_args_list] == ["locked", "zipped", "deleted"]


class TestRun:
    def test_success(self, store, executor):
        descriptor = add_study(store, "studyA", configurations=1)
        result = executor.run(verified(descriptor))
        assert result.success
        assert result.to_dict()["error"] is None

    def test_errors_are_captured(self, store, buckets):
        descriptor = add_study(store, "studyA", configurations=1)
        zipper = MagicMock(spec=DirectoryZipper)
        zipper.zip_directory.side_effect = StorageError("boom")
        executor = ArchiveExecutor(store, zipper, StorageLock(store), buckets)

        result = executor.run(verified(descriptor))

        assert not result.success
        assert isinstance(result.error, StorageError)
        assert result.to_dict()["error_type"] == "StorageError"
        assert result.ended_at >= result.started_at

    def test_lock_held_is_captured(self, store, buckets):
        descriptor = add_study(store, "studyA", configurations=1)
        lock = MagicMock()
        lock.acquire.return_value = False
        result = ArchiveExecutor(store, StorageZipper(store), lock, buckets).run(verified(descriptor))
        assert isinstance(result.error, LockHeldError)
        assert store.paths(STUDY) == []


class FlakyLockBucketStore(InMemoryObjectStore):
    """Lock-bucket reads always fail with a retryable error."""

    def download(self, bucket, path):
        if bucket == LOCK:
            raise google_exceptions.ServiceUnavailable("lock bucket flaky")
        return super().download(bucket, path)


class TestLockFailures:
    def test_acquire_error_leaves_foreign_lock_in_place(self, buckets):
        store = FlakyLockBucketStore()
        for bucket in (SIM, STUDY, LOCK):
            store.create_bucket(bucket)
        descriptor = add_study(store, "studyA", configurations=1)
        StorageLock(store, owner="other-process").acquire(LOCK, descriptor)
        retrying = RetryingObjectStore(store, RetryPolicy(retries=1))
        zipper = MagicMock(spec=DirectoryZipper)
        executor = ArchiveExecutor(retrying, zipper, StorageLock(retrying, owner="me"), buckets)

        result = executor.run(verified(descriptor))

        assert not result.success
        assert isinstance(result.error, google_exceptions.ServiceUnavailable)
        assert store.paths(LOCK) == [descriptor]
        zipper.zip_directory.assert_not_called()
        assert descriptor in store.paths(SIM)

    def test_acquire_error_never_releases(self, store, buckets):
        descriptor = add_study(store, "studyA", configurations=1)
        lock = MagicMock()
        lock.acquire.side_effect = google_exceptions.ServiceUnavailable("503")

        with pytest.raises(google_exceptions.ServiceUnavailable):
            ArchiveExecutor(store, StorageZipper(store), lock, buckets).execute(verified(descriptor))

        lock.release.assert_not_called()

    def test_lost_create_response_still_archives(self, buckets):
        class LostCreateResponse(InMemoryObjectStore):
            calls = 0

            def create_if_absent(self, bucket, path, data, content_type="application/json"):
                self.calls += 1
                created = super().create_if_absent(bucket, path, data, content_type)
                if self.calls == 1:
                    raise google_exceptions.GatewayTimeout("response lost")
                return created

        store = LostCreateResponse()
        for bucket in (SIM, STUDY, LOCK):
            store.create_bucket(bucket)
        descriptor = add_study(store, "studyA", configurations=1)
        retrying = RetryingObjectStore(store, RetryPolicy(retries=2))
        executor = ArchiveExecutor(retrying, StorageZipper(retrying), StorageLock(retrying), buckets)

        result = executor.run(verified(descriptor))

        assert result.success, result.error
        assert store.paths(STUDY) == ["studyA.zip"]
        assert store.paths(LOCK) == []

    def test_release_failure_is_logged_and_zip_error_surfaces(self, store, buckets, caplog):
        descriptor = add_study(store, "studyA", configurations=1)
        lock = MagicMock()
        lock.acquire.return_value = True
        lock.release.side_effect = google_exceptions.ServiceUnavailable("release failed")
        zipper = MagicMock(spec=DirectoryZipper)
        zipper.zip_directory.side_effect = StorageError("upload failed")
        executor = ArchiveExecutor(store, zipper, lock, buckets)

        with caplog.at_level(logging.WARNING, logger="studyarchiver.archive"):
            with pytest.raises(StorageError, match="upload failed"):
                executor.execute(verified(descriptor))

        lock.release.assert_called_once_with(LOCK, descriptor)
        assert any("Could not release lock" in r.getMessage() for r in caplog.records)
        assert descriptor in store.paths(SIM)
