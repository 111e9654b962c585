"""Filename sanitizing, date enrichment and text metadata extraction.

Every name produced here is ASCII-only, lowercase, hyphen-separated and at
most 120 characters before the extension, so it is safe on any backend.
"""

import os
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from workflows.subfolders import keyword_category, strip_diacritics

MAX_BASE_LENGTH = 120

# A year, year-month or full date already present in a base name
_YEAR_TOKEN_RE = re.compile(r"\b\d{4}(?:-\d{2}){0,2}\b")
# Dates appended by enrich_with_date / finalize_for_tax_category
_TRAILING_DATES_RE = re.compile(r"(?:-\d{4}(?:-\d{2}){0,2})+$")
_DETECTED_DATE_RE = re.compile(r"^\d{4}(?:-\d{2}){0,2}$")
_PLACEHOLDER_DATE_RE = re.compile(r"^\d{4}-01-01$")
_EXTENSION_RE = re.compile(r"^\.[A-Za-z0-9]{1,5}$")

_DOTTED_DATE_RE = re.compile(r"\b(\d{1,2})\.(\d{1,2})\.(\d{4})\b")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_TAX_YEAR_RE = re.compile(r"(steuerjahr|veranlagung|tax\s*year)[^\d]{0,10}(\d{4})", re.IGNORECASE)

_INVOICE_PATTERNS = [
    re.compile(r"Rechnungsnummer\s*[:#]?\s*([A-Za-z0-9\-/]{3,})", re.IGNORECASE),
    re.compile(r"Rechnung(?:s)?\s*Nr\.?\s*[:#]?\s*([A-Za-z0-9\-/]{3,})", re.IGNORECASE),
    re.compile(r"Invoice\s*(?:No\.?|Number)\s*[:#]?\s*([A-Za-z0-9\-/]{3,})", re.IGNORECASE),
    re.compile(r"Belegnummer\s*[:#]?\s*([A-Za-z0-9\-/]{3,})", re.IGNORECASE),
]

_COMPANY_SUFFIX = r"(?:GmbH|AG|UG|e\.V\.|KG|OHG|GmbH & Co\.|Ltd\.|LLC)"
_SENDER_AFTER_INVOICE_RE = re.compile(
    r"Rechnung[^\n]{0,50}?([A-Z][A-Za-z0-9&.,\- ]{2,}?\s" + _COMPANY_SUFFIX + r")"
)
_SENDER_COMPANY_RE = re.compile(r"\b([A-Z][A-Za-z0-9&.,\- ]{2,}?\s" + _COMPANY_SUFFIX + r")\b")
_CAPITALIZED_WORD_RE = re.compile(r"[A-Z][A-Za-z]+")


@dataclass
class TextMetadata:
    """Fields recovered from document text without the LLM."""
    date_iso: Optional[str] = None
    invoice_number: Optional[str] = None
    sender: Optional[str] = None
    category: str = "Sonstiges"


def sanitize_base(text: Optional[str]) -> str:
    """Turn arbitrary text into a safe, lowercase filename base.

    Idempotent: sanitize_base(sanitize_base(x)) == sanitize_base(x).
    """
    s = strip_diacritics(str(text or ""))
    s = re.sub(r"\s+", "-", s)
    s = re.sub(r"[^a-zA-Z0-9\-_.]", "", s)
    s = re.sub(r"-+", "-", s)
    s = re.sub(r"^\.+", "", s)
    return s.lower()[:MAX_BASE_LENGTH]


def split_extension(name: str):
    """Split a filename into (base, ext), only treating short alphanumeric suffixes as extensions."""
    base, ext = os.path.splitext(name)
    if ext and _EXTENSION_RE.match(ext):
        return base, ext
    return name, ""


def ensure_extension(name: str, ext: str) -> str:
    """Replace whatever extension name has with ext."""
    base, _ = split_extension(name)
    return f"{base}{ext}"


def enrich_with_date(name: str, detected: Optional[str]) -> str:
    """Append -YYYY, -YYYY-MM or -YYYY-MM-DD before the extension.

    No-op when the base already contains a year-like token or when
    ``detected`` is missing or has any other format.
    """
    base, ext = split_extension(name)
    if _YEAR_TOKEN_RE.search(base):
        return name
    if not detected or not _DETECTED_DATE_RE.match(detected):
        return name
    return f"{base}-{detected}{ext}"


def finalize_for_tax_category(name: str, tax_year: Optional[str], issue_date_iso: Optional[str]) -> str:
    """Date a tax document by its tax year, keeping a differing issue date.

    Any trailing dates already appended are stripped first. A Jan 1st
    issue date is treated as a placeholder and ignored.

    Examples:
        ("est.pdf", "2023", "2024-05-17") -> "est-2023-bescheid-2024-05-17.pdf"
        ("est-2024.pdf", "2023", None)    -> "est-2023.pdf"
    """
    base, ext = split_extension(name)
    base = _TRAILING_DATES_RE.sub("", base)

    issue = issue_date_iso or None
    if issue and _PLACEHOLDER_DATE_RE.match(issue):
        issue = None

    if issue and tax_year and issue[:4] != str(tax_year):
        return f"{base}-{tax_year}-bescheid-{issue}{ext}"
    suffix = issue or tax_year
    if suffix:
        return f"{base}-{suffix}{ext}"
    return f"{base}{ext}"


def build_final_filename(
    proposed: Optional[str],
    original_name: str,
    date_iso: Optional[str],
    tax_year: Optional[str] = None,
) -> str:
    """Final name for a placed document.

    Uses the proposal (or the original name), always keeps the original
    extension, then dates the name. ``tax_year`` selects tax finalization.
    """
    _, ext = split_extension(original_name)
    base = sanitize_base(split_extension(proposed or "")[0])
    if not base:
        base = sanitize_base(split_extension(original_name)[0]) or "dokument"
    name = f"{base}{ext.lower()}"

    if tax_year:
        return finalize_for_tax_category(name, tax_year, date_iso)
    return enrich_with_date(name, date_iso)


def transcript_filename(final_filename: str) -> str:
    return f"{split_extension(final_filename)[0]}.txt"


# =============================================================================
# Text metadata extraction
# =============================================================================

def extract_date_iso(text: Optional[str]) -> Optional[str]:
    """First valid date in the text as YYYY-MM-DD (dd.mm.yyyy preferred over ISO)."""
    if not text:
        return None
    for m in _DOTTED_DATE_RE.finditer(text):
        d, mo, y = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if _valid_date(y, mo, d):
            return f"{y:04d}-{mo:02d}-{d:02d}"
    for m in _ISO_DATE_RE.finditer(text):
        y, mo, d = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if _valid_date(y, mo, d):
            return f"{y:04d}-{mo:02d}-{d:02d}"
    return None


def _valid_date(y: int, m: int, d: int) -> bool:
    try:
        date(y, m, d)
    except ValueError:
        return False
    return True


def extract_invoice_number(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    for pattern in _INVOICE_PATTERNS:
        m = pattern.search(text)
        if m:
            return m.group(1)
    return None


def extract_sender(text: Optional[str]) -> Optional[str]:
    """Guess the sender from the letterhead (first 10 lines)."""
    if not text:
        return None
    lines = text.splitlines()
    head = "\n".join(lines[:10])

    m = _SENDER_AFTER_INVOICE_RE.search(head) or _SENDER_COMPANY_RE.search(head)
    if m:
        return m.group(1)

    for line in lines:
        if _CAPITALIZED_WORD_RE.search(line) and len(line) < 80:
            return line.strip()
    return None


def extract_tax_year(text: Optional[str]) -> Optional[str]:
    """Year following 'Steuerjahr', 'Veranlagung' or 'tax year', if any."""
    m = _TAX_YEAR_RE.search(text or "")
    return m.group(2) if m else None


def extract_metadata_from_text(text: Optional[str]) -> TextMetadata:
    return TextMetadata(
        date_iso=extract_date_iso(text),
        invoice_number=extract_invoice_number(text),
        sender=extract_sender(text),
        category=keyword_category(text or "") or "Sonstiges",
    )


def build_filename(original_name: str, meta: TextMetadata) -> str:
    """Name a document from text metadata alone: category-sender-date-invoice."""
    _, ext = split_extension(original_name)
    parts = [(meta.category or "dokument").lower()]
    if meta.sender:
        parts.append(sanitize_base(meta.sender))
    if meta.date_iso:
        parts.append(meta.date_iso)
    if meta.invoice_number:
        parts.append(sanitize_base(meta.invoice_number))
    base = sanitize_base("-".join(p for p in parts if p)) or "dokument"
    return f"{base}{ext or '.pdf'}"
