"""Metadata sidecars and the placement registry.

Each placed document gets a ``{base}.meta.json`` next to its transcript, and
one ``.jsonl`` entry in the registry folder at the target root. Both are
create-only writes under fresh names, never read-modify-write.
"""

import asyncio
import json
import re
from typing import Optional, TYPE_CHECKING

from utils.timestamps import utc_now_iso
from workflows.file_metadata import SidecarMeta
from workflows.paths import PathResolver

if TYPE_CHECKING:
    from storage import StorageDriver

_UNSAFE_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9_-]")


def registry_entry_name(file_id: str, timestamp: Optional[str] = None) -> str:
    """{iso-ts with ':' and '.' replaced by '-'}-{file_id}.jsonl"""
    ts = (timestamp or utc_now_iso()).replace(":", "-").replace(".", "-")
    return f"{ts}-{_UNSAFE_NAME_CHARS_RE.sub('_', file_id)}.jsonl"


class SidecarWriter:
    """Writes sidecar and registry files through a StorageDriver."""

    def __init__(self, driver: "StorageDriver", resolver: Optional[PathResolver] = None) -> None:
        self.driver = driver
        self.resolver = resolver or PathResolver(driver)

    async def write_meta(self, transcript_ref: str, base_name: str, meta: SidecarMeta) -> str:
        content = json.dumps(meta.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")
        return await asyncio.to_thread(
            self.driver.create_file, transcript_ref, f"{base_name}.meta.json", content, "application/json"
        )

    async def write_registry_entry(self, root_ref: str, registry_folder_name: str, meta: SidecarMeta) -> str:
        registry_ref = await self.resolver.ensure_folder(root_ref, registry_folder_name)
        content = (json.dumps(meta.to_dict(), ensure_ascii=False) + "\n").encode("utf-8")
        return await asyncio.to_thread(
            self.driver.create_file, registry_ref, registry_entry_name(meta.file_id), content, "application/json"
        )
