"""Storage abstractions for drivesorter.

Two kinds of storage are used:
- StorageDriver: the remote file store holding the documents
  (GDriveDriver for Google Drive, LocalDriver for a local folder)
- BlobStore: object storage for run status, logs, profiles and the dedup
  index (GCSBlobStore for a bucket, LocalBlobStore for a local directory)

Usage:
    from storage import create_storage, create_blob_store

    driver = create_storage("gdrive:folder_id")
    driver = create_storage("local:/path/to/folder")
    blobs = create_blob_store(gcs_bucket=None, state_dir=".drivesorter-state")
"""

from typing import Optional

from .base import StorageDriver, StorageError, FileInfo, FolderInfo
from .blobs import BlobStore, LocalBlobStore
from .local import LocalDriver
from .gdrive import GDriveDriver
from .gcs import GCSBlobStore


def create_storage(uri: str, service_account_file: str = "service_account_key.json") -> StorageDriver:
    """Create a storage driver from a URI.

    Args:
        uri: Storage URI in one of these formats:
            - local:/path/to/folder
            - gdrive:folder_id
        service_account_file: Credentials used by the Google Drive driver

    Raises:
        ValueError: If URI format is invalid
    """
    if uri.startswith("local:"):
        return LocalDriver(uri[6:])
    elif uri.startswith("gdrive:"):
        return GDriveDriver(uri[7:], service_account_file=service_account_file)
    else:
        raise ValueError(
            f"Invalid storage URI: {uri}. "
            "Must start with 'local:' or 'gdrive:'"
        )


def create_blob_store(gcs_bucket: Optional[str], state_dir: str) -> BlobStore:
    """Use the GCS bucket when one is configured, else a local directory."""
    if gcs_bucket:
        return GCSBlobStore(gcs_bucket)
    return LocalBlobStore(state_dir)


__all__ = [
    'StorageDriver',
    'StorageError',
    'FileInfo',
    'FolderInfo',
    'BlobStore',
    'LocalBlobStore',
    'GCSBlobStore',
    'LocalDriver',
    'GDriveDriver',
    'create_storage',
    'create_blob_store',
]
