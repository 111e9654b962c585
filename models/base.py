"""Base classes for LLM and text-extraction providers.

This module defines the abstract interfaces that all model backends must
implement, plus the prompt text and response parsing they share.
"""

import json
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class LLMError(Exception):
    """Base exception for LLM and OCR operations."""
    pass


class BadClassificationError(LLMError):
    """The LLM response could not be parsed as a classification proposal."""
    code = "bad-classification"


@dataclass
class ClassificationProposal:
    """Result of classifying one document.

    Attributes:
        new_filename: Proposed filename, possibly with extension
        subfolder: Free-text category proposal (normalized later)
        year_hint: Four-digit year the model attributes the document to
        raw: The parsed JSON object as returned by the model
    """
    new_filename: str
    subfolder: str
    year_hint: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Extraction:
    """Text extracted from a document.

    Attributes:
        text: Extracted text ("" when nothing could be extracted)
        source: Where the text came from (e.g. 'mistral-ocr', 'filename-only')
        artifacts: Provider-side handles to release after processing
    """
    text: str
    source: str
    artifacts: Dict[str, Any] = field(default_factory=dict)


# Maximum file size sent to OCR (50MB)
MAX_FILE_SIZE_MB = 50


SYSTEM_PROMPT = (
    "Du bist ein präziser Dokumentenanalyst und Dateibenenner. Antworte ausschließlich "
    'mit einem JSON-Objekt der Form {"new_filename":"...","target_folder":"...","year":"..."}. '
    "Verwende niemals den Namen des Benutzers im Dateinamen."
)

# Used when no prompt.md is present in the working directory
DEFAULT_BASE_PROMPT = """Du bist ein Assistent, der Dateiinhalte analysiert und präzise, maschinenlesbare JSON-Antworten erzeugt.
Antwortformat (ohne zusätzliche Erklärungen):
{"new_filename": "<neuer_dateiname_mit_endung>", "target_folder": "<zielordner_name>", "year": "<jahr_oder_leer>"}
Regeln:
- new_filename: kurz, sprechend, nur [a-zA-Z0-9-_], ersetze Leerzeichen mit '-', behalte die ursprüngliche Dateiendung bei.
- target_folder: thematischer Ordnername (z.B. "Rechnungen", "Versicherungen", "Bank", "Verträge").
- year: das Jahr, auf das sich das Dokument bezieht (vierstellig), oder leer wenn unklar.
- Antworte ausschließlich mit JSON, kein Markdown, keine Kommentare."""

NAMING_RULES = """Regeln:
- Behalte die Dateiendung des Originals bei.
- new_filename: nur [a-zA-Z0-9-_.], Leerzeichen zu '-',
  beschreibe möglichst aussagekräftig (Dokumenttyp, Absender, Datum, Kennzeichen).
- target_folder: nutze existierende Ordner falls passend.
- Keine Zusatztexte, kein Markdown, nur JSON."""


def load_base_prompt(path: str = "prompt.md") -> str:
    """Return the contents of prompt.md if present, else the built-in prompt."""
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    return DEFAULT_BASE_PROMPT


def build_prompt(
    base: str,
    allowed_subfolders: List[str],
    allow_new_subfolders: bool = False,
    known_institutions: Optional[List[str]] = None,
    disallowed_terms: Optional[List[str]] = None,
) -> str:
    """Append subfolder guardrails to a base prompt."""
    known_institutions = known_institutions or []
    disallowed_terms = disallowed_terms or []

    guard = [
        "Allowed subfolders (canonical):",
        "\n".join(f"- {s}" for s in allowed_subfolders),
        "",
        f"allow_new_subfolders = {'true' if allow_new_subfolders else 'false'}",
        "",
        f"Known institutions: {', '.join(known_institutions)}" if known_institutions else "",
        f"Do not include these names in filenames: {', '.join(disallowed_terms)}" if disallowed_terms else "",
        "",
        "Choose subfolder strictly from the allowed list. If none fits and "
        "allow_new_subfolders=false, select the closest existing folder. "
        "Do not invent new folder names.",
    ]
    return f"{(base or '').strip()}\n\n" + "\n".join(line for line in guard if line)


_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_YEAR_RE = re.compile(r"^(19|20)\d{2}$")


def parse_json_response(text: str) -> Dict[str, Any]:
    """Parse a model response that should be a JSON object.

    Tries the whole text first, then the outermost {...} span, which
    handles responses wrapped in markdown fences or prose.

    Raises:
        BadClassificationError: If no JSON object can be recovered
    """
    text = (text or "").strip()
    try:
        data = json.loads(text)
    except ValueError:
        match = _JSON_OBJECT_RE.search(text)
        if not match:
            raise BadClassificationError(f"No JSON object in model response: {text[:200]!r}")
        try:
            data = json.loads(match.group(0))
        except ValueError as e:
            raise BadClassificationError(f"Invalid JSON in model response: {e}")
    if not isinstance(data, dict):
        raise BadClassificationError(f"Model response is not a JSON object: {text[:200]!r}")
    return data


def proposal_from_response(text: str) -> ClassificationProposal:
    """Turn a raw model response into a ClassificationProposal.

    Raises:
        BadClassificationError: If the response lacks new_filename and target_folder
    """
    data = parse_json_response(text)
    new_filename = str(data.get("new_filename") or "").strip()
    subfolder = str(data.get("target_folder") or data.get("subfolder") or "").strip()
    if not new_filename and not subfolder:
        raise BadClassificationError("Model response has neither new_filename nor target_folder")

    year = str(data.get("year") or "").strip()
    return ClassificationProposal(
        new_filename=new_filename,
        subfolder=subfolder,
        year_hint=year if _YEAR_RE.match(year) else None,
        raw=data,
    )


class LLM(ABC):
    """Abstract base class for LLM providers.

    All LLM providers (OpenAI, Mistral) implement this interface to turn
    extracted document text into a ClassificationProposal. Calls are
    blocking; the pipeline runs them in a worker thread.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'mistral', 'openai')."""
        pass

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier recorded in sidecars and plan records."""
        pass

    @abstractmethod
    def complete(self, messages: List[Dict[str, str]]) -> str:
        """Send chat messages and return the text of the reply.

        Raises:
            LLMError: If the API call fails
        """
        pass

    def classify(
        self,
        text: str,
        original_filename: str,
        inventory: str,
        prompt: str,
    ) -> ClassificationProposal:
        """Propose a filename, subfolder and year for a document.

        Args:
            text: Extracted document text, already cut to the character budget
            original_filename: Name of the file in the source folder
            inventory: Compact listing of the target hierarchy
            prompt: Base prompt with subfolder guardrails

        Returns:
            ClassificationProposal parsed from the model's JSON reply

        Raises:
            LLMError: If the API call fails
            BadClassificationError: If the reply isn't the expected JSON
        """
        messages = self._build_messages(text, original_filename, inventory, prompt)
        return proposal_from_response(self.complete(messages))

    # =========================================================================
    # Helper methods (shared by all implementations)
    # =========================================================================

    def _build_messages(self, text: str, original_filename: str,
                        inventory: str, prompt: str) -> List[Dict[str, str]]:
        user = "\n\n".join([
            prompt,
            NAMING_RULES,
            f"Original filename: {original_filename}",
            f"Aktuelle Ordner & Dateien:\n{inventory or '(keine)'}",
            f"Dokumenttext (OCR, ggf. gekürzt):\n{text or ''}",
        ])
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user},
        ]


class TextExtractor(ABC):
    """Abstract base class for OCR / text extraction providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def extract(self, local_path: str, original_name: str, mime_class: str) -> Extraction:
        """Extract text from a local copy of a PDF or image.

        Raises:
            LLMError: If extraction fails
        """
        pass

    def release(self, extraction: Extraction) -> None:
        """Delete provider-side artifacts created by extract(). Default: nothing."""
        pass

    def _check_file_size(self, path: str) -> None:
        """Validate file size is under the limit.

        Raises:
            ValueError: If the file exceeds the size limit
        """
        file_size = os.path.getsize(path)
        if file_size > MAX_FILE_SIZE_MB * 1024 * 1024:
            raise ValueError(
                f"File exceeds {MAX_FILE_SIZE_MB}MB limit "
                f"({file_size / 1024 / 1024:.1f}MB)"
            )


class FilenameOnlyExtractor(TextExtractor):
    """Extractor that yields no text; classification falls back to the filename."""

    @property
    def name(self) -> str:
        return "filename-only"

    def extract(self, local_path: str, original_name: str, mime_class: str) -> Extraction:
        return Extraction(text="", source=self.name)
