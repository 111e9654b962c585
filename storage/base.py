"""Base classes for storage drivers.

This module defines the abstract interface that remote file stores must
implement. Files and folders are addressed by opaque references (a Google
Drive file ID, or a relative path for the local driver), never by display
path, because documents are renamed and reparented in place.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional


FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

# appProperties key marking a document as already placed
PROCESSED_PROPERTY = "ds_processed"

_MIME_BY_EXTENSION = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".txt": "text/plain",
    ".json": "application/json",
    ".jsonl": "application/json",
}


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


def guess_mime_type(filename: str) -> str:
    """Guess a MIME type from a filename's extension."""
    ext = os.path.splitext(filename)[1].lower()
    return _MIME_BY_EXTENSION.get(ext, "application/octet-stream")


@dataclass
class FileInfo:
    """Information about a file in storage.

    Attributes:
        id: Backend-specific reference (e.g., Google Drive file ID)
        name: Filename only (no directory)
        mime_type: MIME type reported by the backend
        parents: References of the containing folders
        app_properties: Private key/value tags attached to the file
        size: File size in bytes (optional)
    """
    id: str
    name: str
    mime_type: str = "application/octet-stream"
    parents: List[str] = field(default_factory=list)
    app_properties: Dict[str, str] = field(default_factory=dict)
    size: Optional[int] = None

    @property
    def mime_class(self) -> str:
        """Coarse media class: 'pdf', 'image' or 'other'."""
        mime = self.mime_type
        if not mime or mime == "application/octet-stream":
            mime = guess_mime_type(self.name)
        if mime == "application/pdf":
            return "pdf"
        if mime.startswith("image/"):
            return "image"
        return "other"

    @property
    def is_processed(self) -> bool:
        return self.app_properties.get(PROCESSED_PROPERTY) == "1"


@dataclass
class FolderInfo:
    """Information about a folder in storage.

    Attributes:
        id: Backend-specific reference (e.g., Google Drive folder ID)
        name: Folder name only (no parent path)
    """
    id: str
    name: str


class StorageDriver(ABC):
    """Abstract base class for remote file stores.

    All drivers (Google Drive, local filesystem) implement this interface.
    Methods are blocking; async callers run them in a worker thread.
    """

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable name for this storage (e.g., 'My Docs (Google Drive)')."""
        pass

    @property
    @abstractmethod
    def root_ref(self) -> str:
        """Reference of the folder this driver was opened on."""
        pass

    # =========================================================================
    # Read Operations
    # =========================================================================

    @abstractmethod
    def resolve_folder(self, id_or_name: str) -> str:
        """Resolve a folder ID, URL or name into a folder reference.

        Raises:
            StorageError: If no accessible folder matches
        """
        pass

    @abstractmethod
    def list_files(self, folder_ref: str, only_unprocessed: bool = False) -> List[FileInfo]:
        """List files (not folders) directly inside a folder.

        Args:
            folder_ref: Folder to list
            only_unprocessed: Exclude files tagged ds_processed=1

        Raises:
            StorageError: If the folder can't be accessed
        """
        pass

    @abstractmethod
    def list_folders(self, folder_ref: str) -> List[FolderInfo]:
        """List immediate subfolders of a folder.

        Raises:
            StorageError: If the folder can't be accessed
        """
        pass

    @abstractmethod
    def find_folder(self, parent_ref: str, name: str) -> Optional[str]:
        """Return the reference of the subfolder with this exact name, or None."""
        pass

    @abstractmethod
    def download_to_temp(self, file: FileInfo) -> str:
        """Download a file to a local temporary location.

        Returns:
            Local filesystem path. The caller is responsible for deleting it.

        Raises:
            StorageError: If the download fails
        """
        pass

    # =========================================================================
    # Write Operations
    # =========================================================================

    @abstractmethod
    def create_folder(self, parent_ref: str, name: str) -> str:
        """Create a subfolder and return its reference.

        Does not check for an existing folder of the same name.
        """
        pass

    @abstractmethod
    def create_file(self, parent_ref: str, name: str, content: bytes,
                    mime_type: str = "application/octet-stream") -> str:
        """Create a new file with the given content and return its reference.

        Raises:
            StorageError: If the upload fails
        """
        pass

    @abstractmethod
    def update_file(self, file: FileInfo, new_name: Optional[str] = None,
                    new_parent: Optional[str] = None,
                    app_properties: Optional[Dict[str, str]] = None) -> FileInfo:
        """Rename, reparent and/or tag a file.

        Args:
            file: The file to update
            new_name: New filename, or None to keep the current one
            new_parent: Folder to move the file into, or None to leave it
            app_properties: Properties merged into the file's existing ones

        Returns:
            The updated FileInfo (its reference may change for some backends)

        Raises:
            StorageError: If the update fails
        """
        pass

    # =========================================================================
    # Helpers
    # =========================================================================

    def ensure_folder(self, parent_ref: str, name: str) -> str:
        """Get-or-create a subfolder by exact name. Not atomic."""
        existing = self.find_folder(parent_ref, name)
        if existing:
            return existing
        return self.create_folder(parent_ref, name)
