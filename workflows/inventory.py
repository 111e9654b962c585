"""Compact text listing of the target hierarchy for the LLM prompt.

Shows the most recent year folders with their subfolders and files, then
(optionally) the non-year top-level folders, so the model can reuse names
that already exist instead of inventing new ones.

Example:
    2024/
      2024/Rechnungen/
      - rechnung-telekom-2024-03-01.pdf
    (non-year)
    Archiv/
    - alt.pdf
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from storage import StorageDriver

_YEAR_FOLDER_RE = re.compile(r"^\d{4}$")


@dataclass
class InventoryOptions:
    recent_years: int = 3
    max_folders_per_level: int = 12
    max_files_per_folder: int = 12
    include_non_year_top: bool = True


def is_year_folder_name(name: str) -> bool:
    return bool(_YEAR_FOLDER_RE.match((name or "").strip()))


def _file_lines(driver: "StorageDriver", folder_ref: str, indent: str, limit: int) -> List[str]:
    names = sorted(f.name for f in driver.list_files(folder_ref))
    lines = [f"{indent}- {name}" for name in names[:limit]]
    if len(names) > limit:
        lines.append(f"{indent}- ... (+{len(names) - limit} more files)")
    return lines


def build_inventory_text(
    driver: "StorageDriver",
    root_ref: str,
    allowed_subfolders: Optional[Sequence[str]] = None,
    options: Optional[InventoryOptions] = None,
) -> str:
    """Build the inventory listing. Blocking; call through asyncio.to_thread."""
    opts = options or InventoryOptions()
    allowed = list(allowed_subfolders or [])
    lines: List[str] = []

    top = driver.list_folders(root_ref)
    years = sorted((f for f in top if is_year_folder_name(f.name)), key=lambda f: f.name, reverse=True)
    others = sorted((f for f in top if not is_year_folder_name(f.name)), key=lambda f: f.name)
    years = years[:max(1, opts.recent_years)]

    for year in years:
        lines.append(f"{year.name}/")
        subs = driver.list_folders(year.id)
        if allowed:
            # Allow-list order first, unknown names alphabetically after
            subs.sort(key=lambda f: (allowed.index(f.name) if f.name in allowed else len(allowed), f.name))
        else:
            subs.sort(key=lambda f: f.name)
        if len(subs) > opts.max_folders_per_level:
            lines.append(f"  ... (+{len(subs) - opts.max_folders_per_level} more subfolders omitted)")
            subs = subs[:opts.max_folders_per_level]
        for sub in subs:
            lines.append(f"  {year.name}/{sub.name}/")
            lines.extend(_file_lines(driver, sub.id, "  ", opts.max_files_per_folder))

    if opts.include_non_year_top and others:
        lines.append("(non-year)")
        for folder in others[:max(0, opts.max_folders_per_level - len(years))]:
            lines.append(f"{folder.name}/")
            lines.extend(_file_lines(driver, folder.id, "", opts.max_files_per_folder))

    return "\n".join(lines)
