"""
Checksum verification of study manifests.

A manifest (``md5.json``) is a JSON object mapping file names, relative to
the manifest's directory, to hex md5 digests:

    {"output.csv": "9e107d9d372bb6826bd81d3542a419d6", ...}

Md5ManifestVerifier compares each entry against the md5Hash metadata the
object store already keeps for the file; no digest is computed locally.
"""

import base64
import binascii
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from studyarchiver.storage import ObjectStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChecksumCheck:
    """Outcome of checking one manifest."""
    manifest: str
    ok: bool
    checked: tuple[str, ...] = ()
    mismatched: tuple[str, ...] = ()
    missing: tuple[str, ...] = ()
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest": self.manifest,
            "ok": self.ok,
            "checked": list(self.checked),
            "mismatched": list(self.mismatched),
            "missing": list(self.missing),
            "detail": self.detail,
        }


class ChecksumVerifier(ABC):
    """Validates one checksum manifest."""

    @abstractmethod
    def verify(self, bucket: str, manifest_path: str) -> ChecksumCheck:
        """
        Check every file listed in a manifest.

        Args:
            bucket: Bucket holding the manifest and its files
            manifest_path: Path of the manifest object

        Returns:
            ChecksumCheck; storage errors propagate
        """
        pass


def md5_hex_from_metadata(metadata: dict[str, Any]) -> str | None:
    """Decode the base64 md5Hash metadata field into lowercase hex."""
    encoded = metadata.get("md5Hash")
    if not encoded:
        return None
    try:
        return base64.b64decode(encoded).hex()
    except (binascii.Error, ValueError):
        return None


class Md5ManifestVerifier(ChecksumVerifier):
    """Checks md5.json manifests against object store md5Hash metadata."""

    def __init__(self, store: ObjectStore):
        self.store = store

    def verify(self, bucket: str, manifest_path: str) -> ChecksumCheck:
        directory = manifest_path.rsplit("/", 1)[0] + "/" if "/" in manifest_path else ""

        try:
            expected = json.loads(self.store.download(bucket, manifest_path).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return ChecksumCheck(manifest=manifest_path, ok=False, detail=f"unreadable manifest: {e}")
        if not isinstance(expected, dict):
            return ChecksumCheck(manifest=manifest_path, ok=False, detail="manifest is not a JSON object")

        actual = {
            obj.name[len(directory):]: md5_hex_from_metadata(obj.metadata)
            for obj in self.store.list_objects(bucket, directory or None)
        }

        checked, mismatched, missing = [], [], []
        for name, digest in expected.items():
            if name not in actual:
                missing.append(name)
            elif actual[name] is None or actual[name] != str(digest).lower():
                mismatched.append(name)
            else:
                checked.append(name)

        ok = not mismatched and not missing
        detail = "ok" if ok else f"{len(mismatched)} mismatched, {len(missing)} missing"
        if not ok:
            logger.debug(
                f"md5 check failed for gs://{bucket}/{manifest_path}: {detail}",
                extra={"event": "md5_mismatch", "metadata": {"mismatched": mismatched, "missing": missing}},
            )
        return ChecksumCheck(
            manifest=manifest_path,
            ok=ok,
            checked=tuple(checked),
            mismatched=tuple(mismatched),
            missing=tuple(missing),
            detail=detail,
        )
