"""Per-owner configuration profiles.

Layout in the blob store:
    configs/{ownerHash}/profiles/{profileId}.json
    configs/{ownerHash}/default.json          {"profileId": ...}
    configs/{emailHash}.json                  legacy single config per email
"""

import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import structlog

from drivesorter.config import SorterConfig
from runs.errors import ConfigNotFoundError
from runs.identity import email_hash
from utils.timestamps import utc_now_iso

if TYPE_CHECKING:
    from storage import BlobStore

log = structlog.get_logger(__name__)

_PROFILE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def new_profile_id() -> str:
    return f"p_{uuid.uuid4().hex[:12]}"


@dataclass
class ConfigProfile:
    owner_hash: str
    profile_id: str
    label: str
    source_folder_ref: str
    target_root_ref: str
    settings: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[str] = None

    def sorter_config(self, environ=None) -> SorterConfig:
        return SorterConfig.from_settings(self.settings, environ)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ownerHash": self.owner_hash,
            "id": self.profile_id,
            "label": self.label,
            "sourceFolderRef": self.source_folder_ref,
            "targetRootRef": self.target_root_ref,
            "settings": self.settings,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, doc: Dict[str, Any], owner_hash: str = "",
                  profile_id: str = "") -> "ConfigProfile":
        # Legacy documents name the folders sourceFolderId / targetRootFolderId
        return cls(
            owner_hash=doc.get("ownerHash") or owner_hash,
            profile_id=doc.get("id") or profile_id,
            label=doc.get("label") or doc.get("email") or profile_id,
            source_folder_ref=doc.get("sourceFolderRef") or doc.get("sourceFolderId") or "",
            target_root_ref=doc.get("targetRootRef") or doc.get("targetRootFolderId") or "",
            settings=dict(doc.get("settings") or {}),
            updated_at=doc.get("updatedAt"),
        )


class ConfigStore:
    """Reads and writes ConfigProfiles. Blocking."""

    def __init__(self, blobs: "BlobStore") -> None:
        self.blobs = blobs

    @staticmethod
    def profile_key(owner_hash: str, profile_id: str) -> str:
        return f"configs/{owner_hash}/profiles/{profile_id}.json"

    @staticmethod
    def default_key(owner_hash: str) -> str:
        return f"configs/{owner_hash}/default.json"

    @staticmethod
    def legacy_key(email: str) -> str:
        return f"configs/{email_hash(email)}.json"

    # =========================================================================
    # Profiles
    # =========================================================================

    def get_profile(self, owner_hash: str, profile_id: str) -> Optional[ConfigProfile]:
        """Load a profile; a missing, unreadable or non-object document counts as absent."""
        if not _PROFILE_ID_RE.match(profile_id or ""):
            return None
        try:
            doc = self.blobs.read_json(self.profile_key(owner_hash, profile_id))
        except ValueError as e:
            log.warning("ignoring unreadable profile", owner_hash=owner_hash[:12],
                        profile_id=profile_id, error=str(e))
            return None
        if not isinstance(doc, dict):
            return None
        return ConfigProfile.from_dict(doc, owner_hash=owner_hash, profile_id=profile_id)

    def list_profiles(self, owner_hash: str) -> List[ConfigProfile]:
        prefix = f"configs/{owner_hash}/profiles/"
        profiles = []
        for key in self.blobs.list(prefix):
            if not key.endswith(".json"):
                continue
            profile_id = key[len(prefix):-len(".json")]
            profile = self.get_profile(owner_hash, profile_id)
            if profile is not None:
                profiles.append(profile)
        return sorted(profiles, key=lambda p: p.label.lower())

    def save_profile(self, profile: ConfigProfile, make_default: bool = False) -> ConfigProfile:
        """Validate and persist a profile.

        Raises:
            ValueError: If the profile misses folders or has invalid settings
        """
        if not profile.source_folder_ref or not profile.target_root_ref:
            raise ValueError("A profile needs a source folder and a target root")
        if not profile.profile_id:
            profile.profile_id = new_profile_id()
        if not _PROFILE_ID_RE.match(profile.profile_id):
            raise ValueError(f"Invalid profile id: {profile.profile_id!r}")
        # Environment overrides must not leak into the stored settings
        SorterConfig.from_settings(profile.settings, environ={})

        profile.updated_at = utc_now_iso()
        self.blobs.write_json(self.profile_key(profile.owner_hash, profile.profile_id), profile.to_dict())
        log.info("saved profile", owner_hash=profile.owner_hash[:12], profile_id=profile.profile_id)

        if make_default or self.get_default_profile_id(profile.owner_hash) is None:
            self.set_default_profile(profile.owner_hash, profile.profile_id)
        return profile

    def get_default_profile_id(self, owner_hash: str) -> Optional[str]:
        try:
            doc = self.blobs.read_json(self.default_key(owner_hash))
        except ValueError as e:
            log.warning("ignoring unreadable default profile pointer", owner_hash=owner_hash[:12], error=str(e))
            return None
        if not isinstance(doc, dict):
            return None
        return doc.get("profileId") or None

    def set_default_profile(self, owner_hash: str, profile_id: str) -> None:
        """Raises ConfigNotFoundError if the profile doesn't exist."""
        if self.get_profile(owner_hash, profile_id) is None:
            raise ConfigNotFoundError(f"Profile not found: {profile_id}")
        self.blobs.write_json(self.default_key(owner_hash), {"profileId": profile_id})

    # =========================================================================
    # Resolution
    # =========================================================================

    def load_legacy(self, email: str) -> Optional[ConfigProfile]:
        try:
            doc = self.blobs.read_json(self.legacy_key(email))
        except ValueError as e:
            log.warning("ignoring unreadable legacy config", error=str(e))
            return None
        if not isinstance(doc, dict):
            return None
        return ConfigProfile.from_dict(doc, owner_hash=email_hash(email), profile_id="legacy")

    def resolve(self, owner_hash: str, profile_id: Optional[str] = None,
                email: Optional[str] = None) -> ConfigProfile:
        """Explicit profile, then the owner's default, then the legacy email config.

        An explicit profile id that doesn't exist is an error; it never
        falls through to the default.

        Raises:
            ConfigNotFoundError: If nothing resolves
        """
        if profile_id:
            profile = self.get_profile(owner_hash, profile_id)
            if profile is None:
                raise ConfigNotFoundError(f"Profile not found: {profile_id}")
            return profile

        default_id = self.get_default_profile_id(owner_hash)
        if default_id:
            profile = self.get_profile(owner_hash, default_id)
            if profile is not None:
                return profile
            log.warning("default profile is missing", owner_hash=owner_hash[:12], profile_id=default_id)

        if email:
            profile = self.load_legacy(email)
            if profile is not None:
                return profile

        raise ConfigNotFoundError("config-not-found")
