"""Sorting pipeline: classify and place every document of a source folder.

Per document:
    download -> extract text -> duplicate check -> LLM proposal ->
    subfolder/year/filename -> (dry run) plan record
                            -> (real run) folders, transcript, move + tag, sidecars

Each document ends in one of the states ``placed``, ``planned`` (dry run),
``skipped-duplicate`` or ``errored``. Errors are recorded per document and
processing continues with the next one; only listing the source or building
the inventory can fail the whole invocation.
"""

import asyncio
import dataclasses
import os
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

import structlog

from drivesorter import PROCESSING_VERSION
from drivesorter.config import SorterConfig
from models.base import (
    LLM, Extraction, TextExtractor,
    build_prompt, load_base_prompt,
)
from storage.base import FileInfo, PROCESSED_PROPERTY
from utils.timestamps import utc_now_iso
from workflows.deduplication import DedupEngine, DuplicateRecord, content_hash, duplicate_filename
from workflows.dryrun import PlanExporter, duplicate_record, plan_record
from workflows.file_metadata import PlacementPlan, SidecarMeta
from workflows.filenames import (
    TextMetadata, build_filename, build_final_filename, extract_metadata_from_text,
    extract_tax_year, split_extension, transcript_filename,
)
from workflows.inventory import build_inventory_text
from workflows.paths import PathResolver
from workflows.sidecar import SidecarWriter
from workflows.subfolders import normalize_subfolder, normalize_text

if TYPE_CHECKING:
    from runs.events import RunEventChannel
    from storage import StorageDriver

log = structlog.get_logger(__name__)

OCR_MIME_CLASSES = ("pdf", "image")
FILENAME_ONLY_SOURCE = "filename-only"


class PipelineCancelled(Exception):
    """Raised between documents when the run's cancel event is set."""
    pass


@dataclass
class PipelineSummary:
    processed: int = 0
    moved: int = 0
    skipped: int = 0
    duplicates: int = 0
    errors: int = 0
    ocr_sources: Counter = field(default_factory=Counter)
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "moved": self.moved,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "errors": self.errors,
            "ocr_sources": dict(self.ocr_sources),
            "details": list(self.details),
        }


def is_tax_subfolder(subfolder: str, config: SorterConfig) -> bool:
    return normalize_text(config.tax_subfolder) in normalize_text(subfolder)


def derive_year(text: str, subfolder: str, fallback_year: str, config: SorterConfig) -> str:
    """Tax-year phrases in the text override every other year signal for tax documents."""
    if is_tax_subfolder(subfolder, config):
        tax_year = extract_tax_year(text)
        if tax_year:
            return tax_year
    return fallback_year


class SortingPipeline:
    """Processes the documents of one source folder into the target hierarchy.

    Args:
        driver: Remote file store holding source and target folders
        llm: Classification provider
        extractor: OCR provider for PDFs and images
        config: Sorting settings of the run's profile
        source_ref: Folder to take documents from
        target_root_ref: Root of the {year}/{subfolder} hierarchy
        dry_run: Plan only; never mutate the store
        reprocess: Include documents already tagged ds_processed=1
        dedup: Duplicate detector (a fresh run-scoped one by default)
        resolver: Path resolver (shares folder locks across runs when given)
        exporter: Dry-run NDJSON exporter
        events: Channel receiving run log/progress events
        cancel_event: Checked between documents
        prompt: Full prompt (defaults to prompt.md or the built-in one plus guardrails)
        max_llm_chars: Text budget sent to the LLM
        today: Returns today's date; the year fallback for undated documents
    """

    def __init__(
        self,
        driver: "StorageDriver",
        llm: LLM,
        extractor: TextExtractor,
        config: SorterConfig,
        source_ref: str,
        target_root_ref: str,
        dry_run: bool = False,
        reprocess: bool = False,
        dedup: Optional[DedupEngine] = None,
        resolver: Optional[PathResolver] = None,
        exporter: Optional[PlanExporter] = None,
        events: Optional["RunEventChannel"] = None,
        cancel_event: Optional[asyncio.Event] = None,
        prompt: Optional[str] = None,
        max_llm_chars: int = 12000,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.driver = driver
        self.llm = llm
        self.extractor = extractor
        self.config = config
        self.source_ref = source_ref
        self.target_root_ref = target_root_ref
        self.dry_run = dry_run
        self.reprocess = reprocess
        self.dedup = dedup if dedup is not None else DedupEngine()
        self.resolver = resolver or PathResolver(driver)
        self.sidecars = SidecarWriter(driver, self.resolver)
        self.exporter = exporter or PlanExporter(None)
        self.events = events
        self.cancel_event = cancel_event
        self.prompt = prompt or build_prompt(
            load_base_prompt(),
            config.allowed_subfolders,
            config.allow_new_subfolders,
            config.company_terms,
            config.disallowed_terms,
        )
        self.max_llm_chars = max_llm_chars
        self.today = today
        self.summary = PipelineSummary()
        self._inventory = ""

    # =========================================================================
    # Events
    # =========================================================================

    async def _emit(self, msg: str, level: str = "info", **extra: Any) -> None:
        getattr(log, "warning" if level == "warn" else level)(msg, **extra)
        if self.events is not None:
            await self.events.log(msg, level=level, **extra)

    async def _emit_progress(self, done: int, total: int) -> None:
        if self.events is None:
            return
        await self.events.progress({
            "done": done,
            "total": total,
            "processed": self.summary.processed,
            "moved": self.summary.moved,
            "skipped": self.summary.skipped,
            "duplicates": self.summary.duplicates,
            "errors": self.summary.errors,
        })

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self) -> Dict[str, Any]:
        """Process all (unprocessed) documents of the source folder.

        Returns:
            Summary dict: processed, moved, skipped, duplicates, errors,
            ocr_sources, details

        Raises:
            PipelineCancelled: If the cancel event was set
            StorageError: If the source or target can't be listed
        """
        files = await asyncio.to_thread(
            self.driver.list_files, self.source_ref, not self.reprocess
        )
        total = len(files)
        await self._emit("listed source documents", count=total, dry_run=self.dry_run)

        self._inventory = await asyncio.to_thread(
            build_inventory_text, self.driver, self.target_root_ref, self.config.allowed_subfolders
        )

        for index, file in enumerate(files, start=1):
            if self.cancel_event is not None and self.cancel_event.is_set():
                await self._emit("run cancelled", level="warn", done=index - 1, total=total)
                raise PipelineCancelled("cancelled")
            await self.process_document(file)
            await self._emit_progress(index, total)

        await self._emit("pipeline finished", **{k: v for k, v in self.summary.to_dict().items()
                                                  if k not in ("details", "ocr_sources")})
        return self.summary.to_dict()

    async def process_document(self, file: FileInfo) -> str:
        """Process one document and return its terminal state."""
        local_path: Optional[str] = None
        extraction: Optional[Extraction] = None
        self.summary.processed += 1
        try:
            local_path = await asyncio.to_thread(self.driver.download_to_temp, file)
            extraction = await self._extract(file, local_path)
            return await self._classify_and_place(file, extraction)
        except Exception as e:
            self.summary.errors += 1
            self.summary.details.append({"file": file.name, "state": "errored", "error": str(e)})
            log.exception("document failed", file=file.name, file_id=file.id)
            if self.events is not None:
                await self.events.log("document failed", level="error", file=file.name, error=str(e))
            return "errored"
        finally:
            if extraction is not None and extraction.artifacts:
                await self._release(extraction)
            if local_path and os.path.exists(local_path):
                os.unlink(local_path)

    async def _extract(self, file: FileInfo, local_path: str) -> Extraction:
        if file.mime_class in OCR_MIME_CLASSES:
            extraction = await asyncio.to_thread(
                self.extractor.extract, local_path, file.name, file.mime_class
            )
        else:
            extraction = Extraction(text="", source=FILENAME_ONLY_SOURCE)
        self.summary.ocr_sources[extraction.source] += 1
        return extraction

    async def _release(self, extraction: Extraction) -> None:
        try:
            await asyncio.to_thread(self.extractor.release, extraction)
        except Exception as e:
            log.warning("failed to release OCR artifacts", error=str(e), source=extraction.source)

    async def _classify_and_place(self, file: FileInfo, extraction: Extraction) -> str:
        text = extraction.text or ""
        digest = content_hash(text)

        # Filename-only input all hashes alike, so only extracted text is deduplicated.
        # A record left by this same document (an earlier failed run) is not a duplicate.
        if extraction.source != FILENAME_ONLY_SOURCE:
            first = await asyncio.to_thread(self.dedup.lookup, digest)
            if first is not None and first.first_seen_document_id != file.id:
                return await self._handle_duplicate(file, text, digest, first)
            await asyncio.to_thread(self.dedup.remember, digest, file.id, file.name)

        meta = extract_metadata_from_text(text)

        started = time.monotonic()
        proposal = await asyncio.to_thread(
            self.llm.classify, text[:self.max_llm_chars], file.name, self._inventory, self.prompt
        )
        latency_ms = int((time.monotonic() - started) * 1000)

        subfolder = normalize_subfolder(proposal.subfolder, self.config)
        fallback_year = proposal.year_hint or (meta.date_iso[:4] if meta.date_iso else str(self.today().year))
        year = derive_year(text, subfolder, fallback_year, self.config)

        proposed_name = proposal.new_filename or (build_filename(file.name, meta) if text else file.name)
        final_name = build_final_filename(
            proposed_name, file.name, meta.date_iso,
            tax_year=year if is_tax_subfolder(subfolder, self.config) else None,
        )
        plan = PlacementPlan(
            year=year,
            subfolder=subfolder,
            final_filename=final_name,
            transcript_filename=transcript_filename(final_name),
        )

        if self.dry_run:
            exists = await self.resolver.check_exists(self.target_root_ref, year, subfolder)
            record = plan_record(file, text, digest, proposal.raw, plan, exists,
                                 self.llm.model, latency_ms, extraction.source)
            await asyncio.to_thread(self.exporter.write, record)
            self.summary.details.append({"file": file.name, "state": "planned", "planned": plan.scan_path})
            await self._emit("planned document", file=file.name, planned=plan.scan_path)
            return "planned"

        plan = await self._place(file, text, plan, {
            "ds_year": year,
            "ds_sub": subfolder,
            "ds_newname": final_name,
        })
        await self._write_sidecars(file, text, digest, plan, meta, extraction.source, latency_ms)

        self.summary.moved += 1
        self.summary.details.append({"file": file.name, "state": "placed", "to": plan.scan_path})
        await self._emit("placed document", file=file.name, to=plan.scan_path)
        return "placed"

    async def _place(self, file: FileInfo, text: str, plan: PlacementPlan,
                     properties: Dict[str, str]) -> PlacementPlan:
        """Create folders, upload the transcript, then move, rename and tag the file."""
        refs = await self.resolver.ensure_path(self.target_root_ref, plan.year, plan.subfolder)
        plan = dataclasses.replace(plan, scan_folder_ref=refs.scan_ref, transcript_folder_ref=refs.transcript_ref)

        await asyncio.to_thread(
            self.driver.create_file, refs.transcript_ref, plan.transcript_filename,
            text.encode("utf-8"), "text/plain",
        )
        await asyncio.to_thread(
            self.driver.update_file, file,
            new_name=plan.final_filename,
            new_parent=refs.scan_ref,
            app_properties={
                PROCESSED_PROPERTY: "1",
                **properties,
                "ds_version": PROCESSING_VERSION,
            },
        )
        return plan

    async def _write_sidecars(self, file: FileInfo, text: str, digest: str, plan: PlacementPlan,
                              meta: TextMetadata, ocr_source: str, latency_ms: int) -> None:
        sidecar = SidecarMeta(
            file_id=file.id,
            original_name=file.name,
            sha256=digest,
            new_filename=plan.final_filename,
            year_folder=plan.year,
            subfolder=plan.subfolder,
            paths={"scan": plan.scan_path, "transcript": plan.transcript_path},
            document_date=meta.date_iso,
            category=plan.subfolder,
            sender=meta.sender,
            invoice_number=meta.invoice_number,
            ocr_source=ocr_source,
            llm_model=self.llm.model,
            llm_latency_ms=latency_ms,
            processed_at=utc_now_iso(),
        )
        base_name = split_extension(plan.final_filename)[0]
        await self.sidecars.write_meta(plan.transcript_folder_ref, base_name, sidecar)
        await self.sidecars.write_registry_entry(
            self.target_root_ref, self.config.registry_folder_name, sidecar
        )

    async def _handle_duplicate(self, file: FileInfo, text: str, digest: str,
                                first: DuplicateRecord) -> str:
        dup = self.config.duplicates
        self.summary.duplicates += 1
        await self._emit("duplicate detected", file=file.name, duplicate_of=first.first_seen_name,
                         hash=digest[:8], policy=dup.policy)

        if self.dry_run:
            await asyncio.to_thread(self.exporter.write, duplicate_record(file, first, dup.policy))
            if dup.policy == "skip":
                self.summary.skipped += 1
            self.summary.details.append({
                "file": file.name,
                "state": "skipped-duplicate" if dup.policy == "skip" else "planned",
                "duplicate_of": first.first_seen_document_id,
                "duplicate_policy": dup.policy,
            })
            return "skipped-duplicate" if dup.policy == "skip" else "planned"

        if dup.policy == "skip":
            self.summary.skipped += 1
            self.summary.details.append({
                "file": file.name,
                "state": "skipped-duplicate",
                "duplicate_of": first.first_seen_document_id,
            })
            return "skipped-duplicate"

        meta = extract_metadata_from_text(text)
        fallback_year = meta.date_iso[:4] if meta.date_iso else str(self.today().year)
        year = derive_year(text, dup.subfolder_name, fallback_year, self.config)
        new_name = duplicate_filename(file.name, dup.rename_suffix, digest)
        plan = PlacementPlan(
            year=year,
            subfolder=dup.subfolder_name,
            final_filename=new_name,
            transcript_filename=transcript_filename(new_name),
        )
        plan = await self._place(file, text, plan, {
            "ds_year": year,
            "ds_sub": dup.subfolder_name,
            "ds_newname": new_name,
            "ds_duplicate_of": first.first_seen_document_id,
        })

        self.summary.moved += 1
        self.summary.details.append({
            "file": file.name,
            "state": "placed",
            "duplicate_of": first.first_seen_document_id,
            "to": plan.scan_path,
        })
        return "placed"
