"""Content-hash duplicate detection.

The hash is SHA-256 over the extracted text. Detection is scoped to one
pipeline invocation unless a persistent HashIndex is supplied, in which case
hashes are also looked up in (and recorded to) blob storage, keyed by the
target root so separate runs against the same hierarchy see each other.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Dict, Optional, TYPE_CHECKING

import structlog

from workflows.filenames import sanitize_base, split_extension

if TYPE_CHECKING:
    from storage import BlobStore

log = structlog.get_logger(__name__)


def content_hash(text: Optional[str]) -> str:
    """SHA-256 hex digest of the text. Empty or missing text hashes like ""."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


def duplicate_filename(original_name: str, rename_suffix: str, digest: str) -> str:
    """Name for a segregated duplicate: {base}-{suffix}-{hash[:8]}{ext}."""
    base, ext = split_extension(original_name)
    safe_base = sanitize_base(base) or "dokument"
    return f"{safe_base}-{rename_suffix}-{digest[:8]}{ext.lower()}"


@dataclass
class DuplicateRecord:
    """First occurrence of a content hash."""
    hash: str
    first_seen_document_id: str
    first_seen_name: str


class HashIndex(ABC):
    """Persistent store of first occurrences, shared across runs."""

    @abstractmethod
    def get(self, digest: str) -> Optional[DuplicateRecord]:
        pass

    @abstractmethod
    def put(self, record: DuplicateRecord) -> None:
        pass


class BlobHashIndex(HashIndex):
    """HashIndex stored as dedup/{sha256(target_root)}/{hash}.json objects.

    A read-only index answers lookups but never records (dry runs).
    """

    def __init__(self, blobs: "BlobStore", target_root_ref: str, read_only: bool = False) -> None:
        self.blobs = blobs
        self.read_only = read_only
        self.prefix = f"dedup/{hashlib.sha256(target_root_ref.encode('utf-8')).hexdigest()}"

    def _key(self, digest: str) -> str:
        return f"{self.prefix}/{digest}.json"

    def get(self, digest: str) -> Optional[DuplicateRecord]:
        try:
            data = self.blobs.read_json(self._key(digest))
        except ValueError:
            log.warning("ignoring corrupt dedup index entry", key=self._key(digest))
            return None
        if not data:
            return None
        return DuplicateRecord(
            hash=data.get("hash", digest),
            first_seen_document_id=data.get("first_seen_document_id", ""),
            first_seen_name=data.get("first_seen_name", ""),
        )

    def put(self, record: DuplicateRecord) -> None:
        if self.read_only:
            return
        key = self._key(record.hash)
        if self.blobs.exists(key):
            return
        self.blobs.write(key, json.dumps(asdict(record)).encode("utf-8"), "application/json")


class DedupEngine:
    """Tracks content hashes seen during one pipeline invocation.

    Usage:
        dedup = DedupEngine()
        if dedup.is_duplicate(h):
            first = dedup.lookup(h)
        else:
            dedup.remember(h, file.id, file.name)
    """

    def __init__(self, index: Optional[HashIndex] = None) -> None:
        self._seen: Dict[str, DuplicateRecord] = {}
        self._index = index

    @property
    def persistent(self) -> bool:
        return self._index is not None

    def lookup(self, digest: str) -> Optional[DuplicateRecord]:
        record = self._seen.get(digest)
        if record is None and self._index is not None:
            record = self._index.get(digest)
            if record is not None:
                self._seen[digest] = record
        return record

    def is_duplicate(self, digest: str) -> bool:
        return self.lookup(digest) is not None

    def remember(self, digest: str, document_id: str, name: str = "") -> DuplicateRecord:
        """Record the first occurrence of a hash. Later calls keep the first record."""
        existing = self._seen.get(digest)
        if existing is not None:
            return existing
        record = DuplicateRecord(hash=digest, first_seen_document_id=document_id, first_seen_name=name)
        self._seen[digest] = record
        if self._index is not None:
            self._index.put(record)
        return record

    def __len__(self) -> int:
        return len(self._seen)
