"""Directory listing: bucket/prefix -> {path: ObjectMetadata}."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from studyarchiver.errors import ValidationError
from studyarchiver.storage import ObjectStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectMetadata:
    """One listing entry."""
    name: str
    metadata: dict[str, Any] = field(default_factory=dict)


# path -> ObjectMetadata, in the order the store listed them
ObjectListing = dict[str, ObjectMetadata]


def validate_bucket_name(bucket: Any) -> str:
    """Raise ValidationError unless bucket is a non-empty string."""
    if not isinstance(bucket, str):
        raise ValidationError(f"expected string bucket name, got: {bucket!r}")
    if len(bucket) == 0:
        raise ValidationError("invalid zero length bucket name")
    return bucket


def list_directory(store: ObjectStore, bucket: str, prefix: Optional[str] = None) -> ObjectListing:
    """
    Obtain a listing of objects (with metadata) from a bucket.

    Args:
        store: Object store, normally a RetryingObjectStore
        bucket: Bucket name
        prefix: Optional - only objects whose path begins with prefix

    Returns:
        Mapping of object path to ObjectMetadata

    Raises:
        ValidationError: If bucket is not a non-empty string (no network call is made)
    """
    validate_bucket_name(bucket)

    listing: ObjectListing = {}
    for obj in store.list_objects(bucket, prefix):
        if obj and obj.name:
            listing[obj.name] = ObjectMetadata(name=obj.name, metadata=dict(obj.metadata))

    logger.debug(
        f"Listed {len(listing)} objects in gs://{bucket}/{prefix or ''}",
        extra={"event": "listing_built", "metadata": {"bucket": bucket, "prefix": prefix, "count": len(listing)}},
    )
    return listing
