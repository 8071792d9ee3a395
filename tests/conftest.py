import hashlib
import json
from unittest.mock import patch

import pytest

from studyarchiver.config import BucketConfig
from studyarchiver.storage import InMemoryObjectStore


SIM = "sim-bucket"
STUDY = "study-bucket"
LOCK = "lock-bucket"


@pytest.fixture(autouse=True)
def no_sleep():
    """Retries never actually wait in tests."""
    with patch("studyarchiver.utils.time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture
def buckets():
    return BucketConfig(sim=SIM, study=STUDY, lock=LOCK)


@pytest.fixture
def store():
    memory = InMemoryObjectStore()
    for bucket in (SIM, STUDY, LOCK):
        memory.create_bucket(bucket)
    return memory


def add_study(store, prefix, configurations=2, manifests=None, corrupt=()):
    """
    Stage a study in the sim bucket.

    Args:
        store: InMemoryObjectStore
        prefix: Study directory without trailing slash, e.g. "studyA"
        configurations: Configuration count declared in config.json
        manifests: Number of configurations that get an md5.json
            (defaults to all of them)
        corrupt: Configuration indices whose manifest carries a wrong digest

    Returns:
        Descriptor path
    """
    manifests = configurations if manifests is None else manifests
    descriptor = f"{prefix}/config.json"
    config = {"name": prefix, "configurations": [{"index": i} for i in range(configurations)]}
    store.upload(SIM, descriptor, json.dumps(config).encode("utf-8"), content_type="application/json")

    for i in range(configurations):
        data = f"{prefix} output {i}\n".encode("utf-8")
        store.upload(SIM, f"{prefix}/{i}/output.csv", data)
        if i < manifests:
            digest = hashlib.md5(data).hexdigest()
            if i in corrupt:
                digest = "0" * 32
            store.upload(SIM, f"{prefix}/{i}/md5.json", json.dumps({"output.csv": digest}).encode("utf-8"))
    return descriptor
