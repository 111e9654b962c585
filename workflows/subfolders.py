"""Map a free-text category proposal onto a canonical subfolder.

Resolution runs an explicit, ordered tuple of strategies; the first one
returning a name wins. The default order is:

1. keyword_rules     fixed domain vocabulary (payroll, invoices, ...)
2. synonym_rule      the profile's subfolder_synonyms table
3. allow_list_rule   exact or substring match against allowed_subfolders
4. allow_new_rule    the raw proposal, when allow_new_subfolders is set
5. best_allowed      closest allowed entry by shared tokens

The last strategy always answers, so a canonical name is always produced.
"""

import re
import unicodedata
from typing import Callable, Optional, Sequence, Tuple

from drivesorter.config import SorterConfig

FALLBACK_SUBFOLDER = "Sonstiges"

# Checked in order; payroll rules must precede the generic invoice rule
# because "Gehaltsabrechnung" also contains "abrechnung".
KEYWORD_RULES: Tuple[Tuple["re.Pattern", str], ...] = (
    (re.compile(r"(lohnabrechnung|gehaltsabrechnung|payslip|pay\s*slip|wage\s*slip|salary\s*slip|payroll)",
                re.IGNORECASE), "Lohnabrechnungen"),
    (re.compile(r"(lohnausweis|lohnausweise|wage\s*statement|salary\s*statement|income\s*statement)",
                re.IGNORECASE), "Lohnausweise"),
    (re.compile(r"(rechnung|abrechnung|invoice|zahlung|mwst|\bbetrag\b)", re.IGNORECASE), "Rechnungen"),
    (re.compile(r"(versicherung|police|schadennummer)", re.IGNORECASE), "Versicherungen"),
    (re.compile(r"(kontoauszug|bank|ueberweisung|überweisung|sepa|lastschrift)", re.IGNORECASE), "Bank"),
    (re.compile(r"(vertrag|vereinbarung|kündigung|kuendigung)", re.IGNORECASE), "Verträge"),
    (re.compile(r"(steuer|finanzamt|umsatzsteuer|ekst)", re.IGNORECASE), "Steuern"),
    (re.compile(r"(quittung|receipt|beleg|kassenbon)", re.IGNORECASE), "Quittungen"),
    (re.compile(r"(arzt|praxis|rezept|befund|krankenhaus|medizin)", re.IGNORECASE), "Medizin"),
)

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")

# (raw proposal, normalized proposal, config) -> subfolder or None
Strategy = Callable[[str, str, SorterConfig], Optional[str]]


def strip_diacritics(text: str) -> str:
    """NFKD-decompose and drop combining marks ('Verträge' -> 'Vertrage')."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_text(text: Optional[str]) -> str:
    return strip_diacritics(str(text or "").lower())


def keyword_category(text: str) -> Optional[str]:
    """Category of the first keyword rule matching text, or None."""
    for pattern, category in KEYWORD_RULES:
        if pattern.search(text):
            return category
    return None


# =============================================================================
# Strategies
# =============================================================================

def keyword_rules(raw: str, norm: str, config: SorterConfig) -> Optional[str]:
    return keyword_category(raw)


def synonym_rule(raw: str, norm: str, config: SorterConfig) -> Optional[str]:
    for key, target in config.subfolder_synonyms.items():
        if normalize_text(key) in norm:
            return target
    return None


def allow_list_rule(raw: str, norm: str, config: SorterConfig) -> Optional[str]:
    for candidate in config.allowed_subfolders:
        cn = normalize_text(candidate)
        if norm == cn or cn in norm:
            return candidate
    return None


def allow_new_rule(raw: str, norm: str, config: SorterConfig) -> Optional[str]:
    if not config.allow_new_subfolders:
        return None
    return re.sub(r"[\\/]+", "", raw).strip() or FALLBACK_SUBFOLDER


def best_allowed(raw: str, norm: str, config: SorterConfig) -> str:
    """Allowed entry maximizing shared_tokens*10 - |length difference|.

    Ties keep the earliest entry in allow-list order.
    """
    tokens = [t for t in _TOKEN_SPLIT_RE.split(norm) if t]
    best, best_score = FALLBACK_SUBFOLDER, None
    for candidate in config.allowed_subfolders:
        cn = normalize_text(candidate)
        common = sum(1 for t in tokens if t in cn)
        score = common * 10 - abs(len(cn) - len(norm))
        if best_score is None or score > best_score:
            best, best_score = candidate, score
    return best


DEFAULT_STRATEGIES: Tuple[Strategy, ...] = (
    keyword_rules,
    synonym_rule,
    allow_list_rule,
    allow_new_rule,
    best_allowed,
)


def normalize_subfolder(
    proposed: Optional[str],
    config: SorterConfig,
    strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
) -> str:
    """Resolve a proposal to a subfolder name using the given strategies in order."""
    if not proposed or not str(proposed).strip():
        return FALLBACK_SUBFOLDER
    raw = str(proposed)
    norm = normalize_text(raw)
    for strategy in strategies:
        result = strategy(raw, norm, config)
        if result:
            return result
    return FALLBACK_SUBFOLDER
