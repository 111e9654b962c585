"""NDJSON export of dry-run plan records.

One JSON object per line and per document. A placement plan looks like:

    {"file": {"id", "name", "mime"},
     "transcript": {"chars", "sha256"},
     "proposal": {..., "subfolder", "year", "source": "llm"},
     "plan": {"ensure": [...], "wouldMove": "...", "wouldUploadTxt": "..."},
     "exists": {"2024": true, ...},
     "llm": {"model", "latency_ms"},
     "ocr_source": "mistral-ocr"}

and a detected duplicate as ``{"file", "duplicate_of", "duplicate_policy"}``.
"""

import json
import os
import threading
from typing import Any, Dict, Optional

from storage.base import FileInfo
from workflows.deduplication import DuplicateRecord
from workflows.file_metadata import PlacementPlan


def file_record(file: FileInfo) -> Dict[str, Any]:
    return {"id": file.id, "name": file.name, "mime": file.mime_type}


def plan_record(
    file: FileInfo,
    text: str,
    digest: str,
    proposal: Dict[str, Any],
    plan: PlacementPlan,
    exists: Dict[str, bool],
    llm_model: str,
    llm_latency_ms: int,
    ocr_source: str,
) -> Dict[str, Any]:
    return {
        "file": file_record(file),
        "transcript": {"chars": len(text), "sha256": digest},
        "proposal": {**proposal, "subfolder": plan.subfolder, "year": plan.year, "source": "llm"},
        "plan": {
            "ensure": plan.ensure_list,
            "wouldMove": plan.scan_path,
            "wouldUploadTxt": plan.transcript_path,
        },
        "exists": exists,
        "llm": {"model": llm_model, "latency_ms": llm_latency_ms},
        "ocr_source": ocr_source,
    }


def duplicate_record(file: FileInfo, first: DuplicateRecord, policy: str) -> Dict[str, Any]:
    return {
        "file": file_record(file),
        "duplicate_of": {"id": first.first_seen_document_id, "name": first.first_seen_name},
        "duplicate_policy": policy,
    }


class PlanExporter:
    """Appends records to a local NDJSON file. A None path disables export."""

    def __init__(self, path: Optional[str]) -> None:
        self.path = os.path.abspath(path) if path else None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def write(self, record: Dict[str, Any]) -> None:
        if not self.path:
            return
        line = json.dumps(record, ensure_ascii=False) + "\n"
        with self._lock:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
