"""
Study naming rules, descriptor parsing and discovery.

A study lives under one prefix in the sim bucket:

    studyA/config.json        descriptor (DESCRIPTOR_FILENAME)
    studyA/0/md5.json         manifest for configuration 0
    studyA/1/md5.json         manifest for configuration 1
    studyA/0/...              outputs

and is archived to ``studyA.zip`` in the study bucket.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Iterable

from studyarchiver.errors import DescriptorError


DESCRIPTOR_FILENAME = "config.json"
MANIFEST_FILENAME = "md5.json"
ARCHIVE_SUFFIX = ".zip"


@dataclass(frozen=True)
class StudyConfig:
    """Parsed study descriptor."""
    configuration_count: int
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Any) -> "StudyConfig":
        """
        Build from a decoded descriptor.

        The count is len(data["configurations"]); an integer
        "configurationCount" is accepted when "configurations" is absent.

        Raises:
            DescriptorError: If no nonnegative count can be derived
        """
        if not isinstance(data, dict):
            raise DescriptorError(f"study descriptor must be a JSON object, got {type(data).__name__}")

        if "configurations" in data:
            configurations = data["configurations"]
            if not isinstance(configurations, list):
                raise DescriptorError("study descriptor 'configurations' must be a list")
            count = len(configurations)
        elif "configurationCount" in data:
            count = data["configurationCount"]
            if isinstance(count, bool) or not isinstance(count, int):
                raise DescriptorError("study descriptor 'configurationCount' must be an integer")
        else:
            raise DescriptorError("study descriptor has no 'configurations'")

        if count < 0:
            raise DescriptorError(f"negative configuration count: {count}")
        return cls(configuration_count=count, raw=data)

    @classmethod
    def from_bytes(cls, payload: bytes) -> "StudyConfig":
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DescriptorError(f"study descriptor is not valid UTF-8 JSON: {e}") from e
        return cls.from_dict(data)


def is_descriptor(path: str) -> bool:
    return path.endswith(DESCRIPTOR_FILENAME)


def source_prefix(descriptor_path: str) -> str:
    """Descriptor path with the descriptor filename removed ("studyA/config.json" -> "studyA/")."""
    if not is_descriptor(descriptor_path):
        raise DescriptorError(f"not a study descriptor path: {descriptor_path}")
    return descriptor_path[: -len(DESCRIPTOR_FILENAME)]


def archive_path(descriptor_path: str) -> str:
    """Archive object name ("studyA/config.json" -> "studyA.zip")."""
    return descriptor_path.replace("/" + DESCRIPTOR_FILENAME, ARCHIVE_SUFFIX)


def manifest_paths(descriptor_path: str, count: int, filename: str = MANIFEST_FILENAME) -> tuple[str, ...]:
    """
    Expected manifest paths for a study, one per configuration index.

    Args:
        descriptor_path: /path/to/study/config.json
        count: Number of configurations
        filename: Manifest filename within each configuration directory

    Returns:
        ("<prefix>0/md5.json", ..., "<prefix>{count-1}/md5.json")
    """
    if count < 0:
        raise DescriptorError(f"negative configuration count: {count}")
    prefix = source_prefix(descriptor_path)
    return tuple(f"{prefix}{i}/{filename}" for i in range(count))


def discover_studies(paths: Iterable[str]) -> list[str]:
    """
    Study descriptor paths in a listing.

    Args:
        paths: Listing keys (an ObjectListing may be passed directly)

    Returns:
        Paths ending in DESCRIPTOR_FILENAME, in listing order
    """
    return [path for path in paths if is_descriptor(path)]
