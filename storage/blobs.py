"""Blob storage for run status, run logs, config profiles and the dedup index.

Keys are '/'-separated object names such as ``runs/{runId}/status.json``.
"""

import hashlib
import hmac
import json
import os
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, List, Optional
from urllib.parse import quote

from .base import StorageError


class BlobStore(ABC):
    """Abstract key/value object store (GCS bucket or local directory)."""

    @property
    @abstractmethod
    def display_name(self) -> str:
        pass

    @abstractmethod
    def read(self, key: str) -> Optional[bytes]:
        """Return the object's content, or None if it doesn't exist."""
        pass

    @abstractmethod
    def write(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Create or overwrite an object."""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def list(self, prefix: str) -> List[str]:
        """Return all keys starting with prefix, sorted."""
        pass

    @abstractmethod
    def signed_url(self, key: str, ttl_seconds: int) -> str:
        """Return a time-limited read URL for an object."""
        pass

    def append(self, key: str, data: bytes, content_type: str = "application/x-ndjson") -> None:
        """Append to an object, creating it if needed.

        Object stores have no native append, so the default implementation
        rewrites the whole object. It is not safe against concurrent writers.
        """
        previous = self.read(key) or b""
        self.write(key, previous + data, content_type)

    # Helpers

    def read_json(self, key: str) -> Optional[Any]:
        """Read and decode a JSON object.

        Raises:
            ValueError: If the object exists but isn't valid JSON
        """
        data = self.read(key)
        if data is None:
            return None
        return json.loads(data.decode("utf-8"))

    def write_json(self, key: str, obj: Any) -> None:
        self.write(key, json.dumps(obj, ensure_ascii=False).encode("utf-8"), "application/json")


class LocalBlobStore(BlobStore):
    """BlobStore backed by a local directory.

    Signed URLs are ``file://`` URLs carrying an expiry and an HMAC over
    ``key:expires``; use :meth:`verify_signature` to check one.
    """

    def __init__(self, root_path: str, secret: Optional[bytes] = None) -> None:
        self.root_path = os.path.abspath(root_path)
        os.makedirs(self.root_path, exist_ok=True)
        self._secret = secret or secrets.token_bytes(32)

    @property
    def display_name(self) -> str:
        return f"{self.root_path} (local)"

    def _path(self, key: str) -> str:
        full = os.path.normpath(os.path.join(self.root_path, key))
        if not full.startswith(self.root_path + os.sep):
            raise StorageError(f"Invalid blob key: {key}")
        return full

    def read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read blob {key}: {e}")

    def write(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp-{secrets.token_hex(4)}"
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write blob {key}: {e}")

    def append(self, key: str, data: bytes, content_type: str = "application/x-ndjson") -> None:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        try:
            with open(path, "ab") as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"Failed to append to blob {key}: {e}")

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def list(self, prefix: str) -> List[str]:
        keys = []
        for root, _, files in os.walk(self.root_path):
            for name in files:
                if ".tmp-" in name:
                    continue
                rel = os.path.relpath(os.path.join(root, name), self.root_path)
                key = rel.replace(os.sep, "/")
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def _signature(self, key: str, expires: int) -> str:
        return hmac.new(self._secret, f"{key}:{expires}".encode("utf-8"), hashlib.sha256).hexdigest()

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        expires = int(time.time()) + int(ttl_seconds)
        path = quote(self._path(key))
        return f"file://{path}?expires={expires}&signature={self._signature(key, expires)}"

    def verify_signature(self, key: str, expires: int, signature: str) -> bool:
        """Check a signature produced by signed_url and that it hasn't expired."""
        if int(time.time()) > expires:
            return False
        return hmac.compare_digest(self._signature(key, expires), signature)
