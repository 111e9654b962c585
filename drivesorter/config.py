"""Sorting settings attached to a configuration profile.

A profile's ``settings`` object is merged over the defaults below, then the
``ALLOWED_SUBFOLDERS`` / ``ALLOW_NEW_SUBFOLDERS`` environment variables are
applied on top.
"""

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

DEFAULT_ALLOWED_SUBFOLDERS = [
    "Rechnungen",
    "Steuern",
    "Bank",
    "Versicherungen",
    "Verträge",
    "Medizin",
    "Quittungen",
    "Behörden",
    "Sonstiges",
]

DUPLICATE_POLICIES = ("skip", "move")


@dataclass
class DuplicateSettings:
    """How duplicates found during a run are handled.

    Attributes:
        policy: "skip" leaves the duplicate in place, "move" segregates it
        rename_suffix: Inserted before the short hash when renaming a moved duplicate
        subfolder_name: Category folder that receives moved duplicates
        persistent: Keep the hash index in blob storage across runs
    """
    policy: str = "skip"
    rename_suffix: str = "dup"
    subfolder_name: str = "Duplikate"
    persistent: bool = False


@dataclass
class SorterConfig:
    """Settings consumed by the sorting pipeline and the subfolder classifier."""

    allowed_subfolders: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_SUBFOLDERS))
    allow_new_subfolders: bool = False
    subfolder_synonyms: Dict[str, str] = field(default_factory=dict)
    company_terms: List[str] = field(default_factory=list)
    disallowed_terms: List[str] = field(default_factory=list)
    duplicates: DuplicateSettings = field(default_factory=DuplicateSettings)
    registry_folder_name: str = "_registry"
    tax_subfolder: str = "Steuern"

    @classmethod
    def from_settings(cls, settings: Optional[Mapping[str, Any]] = None,
                      environ: Optional[Mapping[str, str]] = None) -> "SorterConfig":
        """Build a config from a profile's settings dict plus env overrides.

        Args:
            settings: The ``settings`` object of a ConfigProfile (may be None)
            environ: Environment mapping (defaults to os.environ)

        Raises:
            ValueError: If the duplicate policy is unknown
        """
        settings = dict(settings or {})
        env = os.environ if environ is None else environ
        cfg = cls()

        if settings.get("allowed_subfolders"):
            cfg.allowed_subfolders = [str(s) for s in settings["allowed_subfolders"]]
        if "allow_new_subfolders" in settings:
            cfg.allow_new_subfolders = bool(settings["allow_new_subfolders"])
        if settings.get("subfolder_synonyms"):
            cfg.subfolder_synonyms = {str(k): str(v) for k, v in settings["subfolder_synonyms"].items()}

        overrides = settings.get("prompt_overrides") or {}
        cfg.company_terms = list(overrides.get("company_terms") or [])
        cfg.disallowed_terms = list(overrides.get("disallowed_terms") or [])

        dup = settings.get("duplicates") or {}
        cfg.duplicates = DuplicateSettings(
            policy=dup.get("policy", "skip"),
            rename_suffix=dup.get("rename_suffix", "dup"),
            subfolder_name=dup.get("subfolder_name", "Duplikate"),
            persistent=bool(dup.get("persistent", False)),
        )
        if cfg.duplicates.policy not in DUPLICATE_POLICIES:
            raise ValueError(
                f"Unknown duplicate policy: {cfg.duplicates.policy}. "
                f"Must be one of {', '.join(DUPLICATE_POLICIES)}"
            )

        if settings.get("registry_folder_name"):
            cfg.registry_folder_name = str(settings["registry_folder_name"])
        if settings.get("tax_subfolder"):
            cfg.tax_subfolder = str(settings["tax_subfolder"])

        # Environment overrides win over profile settings
        if env.get("ALLOWED_SUBFOLDERS"):
            cfg.allowed_subfolders = [s.strip() for s in env["ALLOWED_SUBFOLDERS"].split(",") if s.strip()]
        if "ALLOW_NEW_SUBFOLDERS" in env:
            cfg.allow_new_subfolders = env["ALLOW_NEW_SUBFOLDERS"] == "1"

        return cfg

    def to_dict(self) -> Dict[str, Any]:
        """Serialize back into the profile ``settings`` shape."""
        return {
            "allowed_subfolders": list(self.allowed_subfolders),
            "allow_new_subfolders": self.allow_new_subfolders,
            "subfolder_synonyms": dict(self.subfolder_synonyms),
            "prompt_overrides": {
                "company_terms": list(self.company_terms),
                "disallowed_terms": list(self.disallowed_terms),
            },
            "duplicates": asdict(self.duplicates),
            "registry_folder_name": self.registry_folder_name,
            "tax_subfolder": self.tax_subfolder,
        }
