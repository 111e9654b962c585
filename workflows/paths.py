"""Get-or-create of the {year}/{subfolder}/{Scan,Texttranskript} hierarchy."""

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from storage import StorageDriver

log = structlog.get_logger(__name__)

SCAN_FOLDER = "Scan"
TRANSCRIPT_FOLDER = "Texttranskript"


@dataclass(frozen=True)
class PathRefs:
    year_ref: str
    subfolder_ref: str
    scan_ref: str
    transcript_ref: str


class FolderLocks:
    """asyncio.Lock per (parent_ref, name), shared by all runs of one process.

    Serializes find-then-create within the process. Two processes working
    on the same target root can still create sibling folders with the same
    name; Google Drive allows that and the first match wins on lookup.
    """

    def __init__(self) -> None:
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def get(self, parent_ref: str, name: str) -> asyncio.Lock:
        key = (parent_ref, name)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock


class PathResolver:
    """Resolves target folders for placed documents, creating missing ones."""

    def __init__(self, driver: "StorageDriver", locks: Optional[FolderLocks] = None) -> None:
        self.driver = driver
        self.locks = locks or FolderLocks()
        self._known: Dict[Tuple[str, str], str] = {}

    async def ensure_folder(self, parent_ref: str, name: str) -> str:
        """Exact-name lookup under parent_ref, creating the folder if absent."""
        key = (parent_ref, name)
        async with self.locks.get(parent_ref, name):
            ref = self._known.get(key)
            if ref:
                return ref
            ref = await asyncio.to_thread(self.driver.find_folder, parent_ref, name)
            if not ref:
                ref = await asyncio.to_thread(self.driver.create_folder, parent_ref, name)
                log.info("created folder", parent=parent_ref, name=name, ref=ref)
            self._known[key] = ref
            return ref

    async def ensure_path(self, root_ref: str, year: str, subfolder: str) -> PathRefs:
        year_ref = await self.ensure_folder(root_ref, str(year))
        subfolder_ref = await self.ensure_folder(year_ref, subfolder)
        scan_ref = await self.ensure_folder(subfolder_ref, SCAN_FOLDER)
        transcript_ref = await self.ensure_folder(subfolder_ref, TRANSCRIPT_FOLDER)
        return PathRefs(year_ref, subfolder_ref, scan_ref, transcript_ref)

    async def check_exists(self, root_ref: str, year: str, subfolder: str) -> Dict[str, bool]:
        """Read-only probe of the four path segments, keyed by display path."""
        year = str(year)
        find = self.driver.find_folder

        year_ref = await asyncio.to_thread(find, root_ref, year)
        sub_ref = await asyncio.to_thread(find, year_ref, subfolder) if year_ref else None
        scan_ref = await asyncio.to_thread(find, sub_ref, SCAN_FOLDER) if sub_ref else None
        text_ref = await asyncio.to_thread(find, sub_ref, TRANSCRIPT_FOLDER) if sub_ref else None

        return {
            year: bool(year_ref),
            f"{year}/{subfolder}": bool(sub_ref),
            f"{year}/{subfolder}/{SCAN_FOLDER}": bool(scan_ref),
            f"{year}/{subfolder}/{TRANSCRIPT_FOLDER}": bool(text_ref),
        }
