"""
studyarchiver - batch archival of simulation studies

Discovers studies staged in an object store bucket, verifies their md5
manifests, zips verified studies into an archive bucket and removes the
originals.
"""

__version__ = "0.1.0"


__all__ = [
    "ArchivePipeline",
    "ArchiverConfig",
    "BucketConfig",
    "PassResult",
    "load_config",
]

from .config import ArchiverConfig, BucketConfig, load_config
from .pipeline import ArchivePipeline, PassResult
