"""Local filesystem storage driver.

Folder and file references are paths relative to the root directory, using
'/' as separator; the root itself is "". appProperties are kept in a JSON
file under the hidden ``.drivesorter`` folder, keyed by file reference.
"""

import json
import os
import shutil
import tempfile
from typing import Dict, List, Optional

from .base import (
    StorageDriver, StorageError, FileInfo, FolderInfo,
    PROCESSED_PROPERTY, guess_mime_type,
)


class LocalDriver(StorageDriver):
    """Storage driver for local filesystem.

    Unlike Google Drive, a directory can't hold two entries with the same
    name, so colliding creates/moves get a " (n)" suffix instead.
    """

    PROPERTIES_DIR = ".drivesorter"
    PROPERTIES_FILE = "properties.json"

    def __init__(self, root_path: str) -> None:
        """Initialize local storage driver.

        Args:
            root_path: Path to the root directory

        Raises:
            StorageError: If root_path doesn't exist
        """
        self.root_path = os.path.abspath(root_path)
        if not os.path.exists(self.root_path):
            raise StorageError(f"Directory does not exist: {self.root_path}")
        if not os.path.isdir(self.root_path):
            raise StorageError(f"Not a directory: {self.root_path}")

    @property
    def display_name(self) -> str:
        return f"{self.root_path} (local)"

    @property
    def root_ref(self) -> str:
        return ""

    def _full_path(self, ref: str) -> str:
        """Convert a reference to an absolute path."""
        if not ref:
            return self.root_path
        full = os.path.normpath(os.path.join(self.root_path, ref))
        if full != self.root_path and not full.startswith(self.root_path + os.sep):
            raise StorageError(f"Reference escapes storage root: {ref}")
        return full

    def _ref(self, abs_path: str) -> str:
        """Convert an absolute path to a reference."""
        rel = os.path.relpath(abs_path, self.root_path)
        return "" if rel == "." else rel.replace(os.sep, "/")

    def _require_dir(self, ref: str) -> str:
        full = self._full_path(ref)
        if not os.path.isdir(full):
            raise StorageError(f"Folder does not exist: {ref or '(root)'}")
        return full

    # =========================================================================
    # appProperties
    # =========================================================================

    def _properties_path(self) -> str:
        return os.path.join(self.root_path, self.PROPERTIES_DIR, self.PROPERTIES_FILE)

    def _load_properties(self) -> Dict[str, Dict[str, str]]:
        path = self._properties_path()
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read properties file: {e}")

    def _save_properties(self, props: Dict[str, Dict[str, str]]) -> None:
        path = self._properties_path()
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(props, f, indent=2, sort_keys=True)

    @staticmethod
    def _unique_path(path: str) -> str:
        """Return path, or path with a ' (n)' suffix if it already exists."""
        if not os.path.exists(path):
            return path
        base, ext = os.path.splitext(path)
        n = 1
        while os.path.exists(f"{base} ({n}){ext}"):
            n += 1
        return f"{base} ({n}){ext}"

    # =========================================================================
    # Read Operations
    # =========================================================================

    def resolve_folder(self, id_or_name: str) -> str:
        """Resolve a relative path, or search the tree for a folder by name."""
        if not id_or_name:
            return ""
        full = self._full_path(id_or_name)
        if os.path.isdir(full):
            return self._ref(full)

        for root, dirs, _ in os.walk(self.root_path):
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            if id_or_name in dirs:
                return self._ref(os.path.join(root, id_or_name))

        raise StorageError(f"Folder not found: {id_or_name}")

    def list_files(self, folder_ref: str, only_unprocessed: bool = False) -> List[FileInfo]:
        """List files directly inside a folder, sorted by name."""
        full = self._require_dir(folder_ref)
        props = self._load_properties()

        results = []
        for name in sorted(os.listdir(full)):
            if name.startswith("."):
                continue
            abs_path = os.path.join(full, name)
            if not os.path.isfile(abs_path):
                continue

            ref = self._ref(abs_path)
            file_props = dict(props.get(ref, {}))
            if only_unprocessed and file_props.get(PROCESSED_PROPERTY) == "1":
                continue

            try:
                size = os.path.getsize(abs_path)
            except OSError:
                size = None

            results.append(FileInfo(
                id=ref,
                name=name,
                mime_type=guess_mime_type(name),
                parents=[folder_ref],
                app_properties=file_props,
                size=size,
            ))

        return results

    def list_folders(self, folder_ref: str) -> List[FolderInfo]:
        """List immediate subfolders, sorted by name."""
        full = self._require_dir(folder_ref)
        results = []
        for name in sorted(os.listdir(full)):
            if name.startswith("."):
                continue
            abs_path = os.path.join(full, name)
            if os.path.isdir(abs_path):
                results.append(FolderInfo(id=self._ref(abs_path), name=name))
        return results

    def find_folder(self, parent_ref: str, name: str) -> Optional[str]:
        full = os.path.join(self._full_path(parent_ref), name)
        if os.path.isdir(full):
            return self._ref(full)
        return None

    def download_to_temp(self, file: FileInfo) -> str:
        """Copy the file to a temporary location."""
        src = self._full_path(file.id)
        if not os.path.isfile(src):
            raise StorageError(f"File does not exist: {file.id}")

        _, ext = os.path.splitext(file.name)
        temp_fd, temp_path = tempfile.mkstemp(suffix=ext)
        os.close(temp_fd)
        try:
            shutil.copyfile(src, temp_path)
        except OSError as e:
            os.unlink(temp_path)
            raise StorageError(f"Failed to copy file {file.id}: {e}")
        return temp_path

    # =========================================================================
    # Write Operations
    # =========================================================================

    def create_folder(self, parent_ref: str, name: str) -> str:
        parent = self._require_dir(parent_ref)
        full = os.path.join(parent, name)
        os.makedirs(full, exist_ok=True)
        return self._ref(full)

    def create_file(self, parent_ref: str, name: str, content: bytes,
                    mime_type: str = "application/octet-stream") -> str:
        parent = self._require_dir(parent_ref)
        dest = self._unique_path(os.path.join(parent, name))
        try:
            with open(dest, "wb") as f:
                f.write(content)
        except OSError as e:
            raise StorageError(f"Failed to write file {name}: {e}")
        return self._ref(dest)

    def update_file(self, file: FileInfo, new_name: Optional[str] = None,
                    new_parent: Optional[str] = None,
                    app_properties: Optional[Dict[str, str]] = None) -> FileInfo:
        src = self._full_path(file.id)
        if not os.path.isfile(src):
            raise StorageError(f"Source file does not exist: {file.id}")

        parent_ref = new_parent if new_parent is not None else self._ref(os.path.dirname(src))
        parent = self._require_dir(parent_ref)
        name = new_name or os.path.basename(src)

        dest = os.path.join(parent, name)
        if os.path.abspath(dest) != src:
            dest = self._unique_path(dest)
            try:
                shutil.move(src, dest)
            except OSError as e:
                raise StorageError(f"Failed to move {file.id} to {self._ref(dest)}: {e}")

        new_ref = self._ref(dest)
        props = self._load_properties()
        file_props = props.pop(file.id, {})
        if app_properties:
            file_props.update({k: str(v) for k, v in app_properties.items()})
        if file_props:
            props[new_ref] = file_props
        self._save_properties(props)

        return FileInfo(
            id=new_ref,
            name=os.path.basename(dest),
            mime_type=file.mime_type,
            parents=[parent_ref],
            app_properties=dict(file_props),
            size=file.size,
        )
