"""Dataclasses describing where a document goes and what was recorded about it."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class PlacementPlan:
    """Target location and names for one document.

    Computed once per document from the classification proposal and the
    sorting config. Folder refs stay None until paths are resolved, and
    are always None in dry runs.
    """

    year: str                                   # "2024"
    subfolder: str                              # "Rechnungen"
    final_filename: str                         # "rechnung-telekom-2024-03-01.pdf"
    transcript_filename: str                    # "rechnung-telekom-2024-03-01.txt"
    scan_folder_ref: Optional[str] = None       # {year}/{subfolder}/Scan
    transcript_folder_ref: Optional[str] = None  # {year}/{subfolder}/Texttranskript

    @property
    def scan_path(self) -> str:
        return f"{self.year}/{self.subfolder}/Scan/{self.final_filename}"

    @property
    def transcript_path(self) -> str:
        return f"{self.year}/{self.subfolder}/Texttranskript/{self.transcript_filename}"

    @property
    def ensure_list(self) -> list:
        """Folders a real run would get-or-create, outermost first."""
        return [
            self.year,
            f"{self.year}/{self.subfolder}",
            f"{self.year}/{self.subfolder}/Scan",
            f"{self.year}/{self.subfolder}/Texttranskript",
        ]


@dataclass
class SidecarMeta:
    """Provenance record written next to the transcript and into the registry."""

    # Identity
    file_id: str
    original_name: str
    sha256: str                              # Hash of the extracted text

    # Placement
    new_filename: str
    year_folder: str
    subfolder: str
    paths: Dict[str, str] = field(default_factory=dict)   # {"scan": ..., "transcript": ...}

    # Extracted from text
    document_date: Optional[str] = None      # "YYYY-MM-DD"
    category: Optional[str] = None
    sender: Optional[str] = None
    invoice_number: Optional[str] = None

    # Provenance
    ocr_source: Optional[str] = None         # "mistral-ocr", "filename-only"
    llm_model: Optional[str] = None
    llm_latency_ms: Optional[int] = None
    processed_at: Optional[str] = None       # ISO-8601 UTC

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_id": self.file_id,
            "original_name": self.original_name,
            "new_filename": self.new_filename,
            "year_folder": self.year_folder,
            "subfolder": self.subfolder,
            "paths": dict(self.paths),
            "document_date": self.document_date,
            "category": self.category,
            "sender": self.sender,
            "invoice_number": self.invoice_number,
            "sha256": self.sha256,
            "ocr_source": self.ocr_source,
            "llm_model": self.llm_model,
            "llm_latency_ms": self.llm_latency_ms,
            "processed_at": self.processed_at,
        }
