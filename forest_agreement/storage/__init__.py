"""Output stores.

- RasterStore: Abstract base class for rasters, tables and text outputs
- LocalFileStore: Writes under a local root directory
- BlobStore: Uploads to an Azure Blob Storage container

The active store is selected via configuration (``FA_STORAGE``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from forest_agreement.storage.base import RasterStore, StorageError, StorageTarget
from forest_agreement.storage.local import LocalFileStore

if TYPE_CHECKING:
    from forest_agreement.core.config import AgreementConfig

LOCAL = "local"
BLOB = "blob"


def store_from_config(config: AgreementConfig) -> RasterStore:
    """Build the store selected by the pipeline configuration."""
    if config.storage == BLOB:
        from forest_agreement.storage.blob import BlobStore

        return BlobStore(config.blob_container)
    return LocalFileStore(config.storage_root)


__all__ = [
    "BLOB",
    "LOCAL",
    "LocalFileStore",
    "RasterStore",
    "StorageError",
    "StorageTarget",
    "store_from_config",
]
