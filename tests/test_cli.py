"""Tests for the studyarchiver command line."""

import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from studyarchiver.cli import main
from studyarchiver.config import BucketConfig
from studyarchiver.pipeline import ArchivePipeline
from studyarchiver.storage import InMemoryObjectStore

from conftest import LOCK, SIM, STUDY, add_study


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("STUDYARCHIVER_SIM_BUCKET", "STUDYARCHIVER_STUDY_BUCKET", "STUDYARCHIVER_LOCK_BUCKET"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def runner():
    return CliRunner()


def write_config(path="archiver.yaml"):
    with open(path, "w") as f:
        yaml.dump({
            "buckets": {"sim": SIM, "study": STUDY, "lock": LOCK},
            "logging": {"console": False, "output": "logs/test.log"},
        }, f)
    return path


def in_memory_pipeline(store):
    def build(config, store_arg=None):
        return ArchivePipeline(store, config.buckets)
    return build


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_run_archives_and_exits_zero(runner, store):
    add_study(store, "studyA", configurations=1)

    with runner.isolated_filesystem():
        config_path = write_config()
        with patch("studyarchiver.cli.ArchivePipeline.from_config", side_effect=in_memory_pipeline(store)):
            result = runner.invoke(main, ["run", "--config", config_path])

    assert result.exit_code == 0, result.output
    assert "studyA.zip" in result.output
    assert store.paths(STUDY) == ["studyA.zip"]


def test_run_exits_one_on_failures(runner, store):
    store.upload(SIM, "bad/config.json", b"{oops")

    with runner.isolated_filesystem():
        config_path = write_config()
        with patch("studyarchiver.cli.ArchivePipeline.from_config", side_effect=in_memory_pipeline(store)):
            result = runner.invoke(main, ["run", "--config", config_path])

    assert result.exit_code == 1
    assert "failure" in result.output


def test_run_with_missing_bucket_exits_two(runner):
    with runner.isolated_filesystem():
        result = runner.invoke(main, ["run", "--sim-bucket", "sims"])
    assert result.exit_code == 2
    assert "Configuration invalid" in result.output


def test_bucket_flags_override_config(runner, store):
    store.create_bucket("other-sim")
    add_study(store, "studyA", configurations=1)
    seen = {}

    def build(config, store_arg=None):
        seen["buckets"] = config.buckets
        return ArchivePipeline(store, config.buckets)

    with runner.isolated_filesystem():
        config_path = write_config()
        with patch("studyarchiver.cli.ArchivePipeline.from_config", side_effect=build):
            result = runner.invoke(main, ["run", "--config", config_path, "--sim-bucket", "other-sim"])

    assert result.exit_code == 0, result.output
    assert seen["buckets"] == BucketConfig(sim="other-sim", study=STUDY, lock=LOCK)
    assert store.paths(STUDY) == []


def test_verify_json(runner, store):
    add_study(store, "ready", configurations=1)
    add_study(store, "pending", configurations=2, manifests=1)

    with runner.isolated_filesystem():
        config_path = write_config()
        with patch("studyarchiver.cli.ArchivePipeline.from_config", side_effect=in_memory_pipeline(store)):
            result = runner.invoke(main, ["verify", "--config", config_path, "--json"])

    assert result.exit_code == 0, result.output
    statuses = {v["study"]: v["status"] for v in json.loads(result.output)}
    assert statuses == {"ready/config.json": "verified", "pending/config.json": "not_ready"}
    assert store.paths(STUDY) == []


def test_verify_exits_one_on_checksum_failure(runner, store):
    add_study(store, "corrupt", configurations=1, corrupt={0})

    with runner.isolated_filesystem():
        config_path = write_config()
        with patch("studyarchiver.cli.ArchivePipeline.from_config", side_effect=in_memory_pipeline(store)):
            result = runner.invoke(main, ["verify", "--config", config_path])

    assert result.exit_code == 1
    assert "failed" in result.output


def test_ls(runner):
    memory = InMemoryObjectStore({"b": {"a/1.txt": b"abc", "b/2.txt": b""}})
    with patch("studyarchiver.cli.GCSObjectStore", return_value=memory):
        result = runner.invoke(main, ["ls", "b", "--prefix", "a/"])
    assert result.exit_code == 0
    assert "a/1.txt" in result.output
    assert "b/2.txt" not in result.output


def test_ls_missing_bucket_exits_one(runner):
    with patch("studyarchiver.cli.GCSObjectStore", return_value=InMemoryObjectStore()):
        result = runner.invoke(main, ["ls", "nope"])
    assert result.exit_code == 1
