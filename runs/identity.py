"""Ownership fingerprints and run identifiers."""

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from utils.timestamps import to_iso, utc_now


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def email_hash(email: str) -> str:
    """sha256 of the lowercased email; also names legacy config documents."""
    return sha256_hex(str(email).strip().lower())


@dataclass(frozen=True)
class OwnerIdentity:
    """Who is asking: an access key, an email, or both.

    The access key wins when both are present.
    """
    email: Optional[str] = None
    access_key: Optional[str] = None

    @property
    def fingerprint(self) -> Optional[str]:
        if self.access_key:
            return sha256_hex(self.access_key)
        if self.email:
            return email_hash(self.email)
        return None


def owner_hash(email: Optional[str] = None, access_key: Optional[str] = None) -> str:
    """Ownership fingerprint for a caller.

    Raises:
        ValueError: If neither an email nor an access key is given
    """
    fingerprint = OwnerIdentity(email=email, access_key=access_key).fingerprint
    if fingerprint is None:
        raise ValueError("An email or access key is required")
    return fingerprint


def new_run_id(now: Optional[datetime] = None) -> str:
    """run_{ISO timestamp}_{8 hex chars}"""
    return f"run_{to_iso(now or utc_now())}_{uuid.uuid4().hex[:8]}"
