"""Run lifecycle: dry runs, background runs, status, artifacts, cancellation.

A run goes ``running -> succeeded | failed`` and never back. Dry runs are
awaited by the caller; real runs are queued on a RunWorker and tracked
through the persisted status document.
"""

import asyncio
import hmac
from dataclasses import dataclass, field
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TYPE_CHECKING,
)

import structlog

from drivesorter import DriveSorter
from models import LLM, TextExtractor, create_extractor, create_llm
from runs.config_store import ConfigProfile, ConfigStore
from runs.errors import (
    ForbiddenError, RunError, RunNotFoundError, TargetBusyError,
)
from runs.events import RunEventChannel
from runs.identity import OwnerIdentity, new_run_id
from runs.store import FAILED, RUNNING, SUCCEEDED, RunRecord, RunStore
from storage import StorageDriver, create_storage
from workflows.deduplication import BlobHashIndex, DedupEngine
from workflows.dryrun import PlanExporter
from workflows.paths import FolderLocks, PathResolver
from workflows.pipeline import PipelineCancelled, SortingPipeline

if TYPE_CHECKING:
    from storage import BlobStore

log = structlog.get_logger(__name__)

MIN_TTL_SECONDS = 60
MAX_TTL_SECONDS = 86400
DEFAULT_TTL_SECONDS = 3600
MAX_LIST_LIMIT = 100


@dataclass
class RunRequest:
    email: Optional[str] = None
    profile_id: Optional[str] = None
    access_key: Optional[str] = None
    reprocess: bool = False

    @property
    def identity(self) -> OwnerIdentity:
        return OwnerIdentity(email=self.email, access_key=self.access_key)


@dataclass
class Providers:
    """The collaborators one run talks to."""
    driver: StorageDriver
    llm: LLM
    extractor: TextExtractor


def default_providers(profile: ConfigProfile) -> Providers:
    """Build providers from DriveSorter settings; the driver is opened on the target root.

    Target roots without a scheme are Google Drive folder IDs.
    """
    uri = profile.target_root_ref
    if ":" not in uri or uri.startswith("http"):
        uri = f"gdrive:{uri}"
    return Providers(
        driver=create_storage(uri, service_account_file=DriveSorter.credentials_file),
        llm=create_llm(DriveSorter.llm_provider_name, DriveSorter.llm_model()),
        extractor=create_extractor(DriveSorter.ocr_provider_name, DriveSorter.ocr_timeout_seconds),
    )


# =============================================================================
# Worker
# =============================================================================

JobFn = Callable[[asyncio.Event], Awaitable[None]]


@dataclass
class _Job:
    run_id: str
    target_key: str
    fn: JobFn
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class RunWorker:
    """Bounded queue of run jobs executed by a fixed number of tasks.

    Each job gets its own cancel event. At most one queued or running job
    per target key; a second one is rejected with TargetBusyError.
    """

    def __init__(self, concurrency: int = 1, max_queued: int = 16) -> None:
        self.concurrency = max(1, concurrency)
        self.max_queued = max_queued
        self._queue: Optional["asyncio.Queue[_Job]"] = None
        self._tasks: List[asyncio.Task] = []
        self._busy: Dict[str, str] = {}
        self._jobs: Dict[str, _Job] = {}

    def _ensure_started(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_queued)
        if not self._tasks:
            self._tasks = [asyncio.create_task(self._work(), name=f"run-worker-{i}")
                           for i in range(self.concurrency)]

    def busy_run(self, target_key: str) -> Optional[str]:
        """Run id currently holding target_key, if any."""
        return self._busy.get(target_key)

    def submit(self, run_id: str, target_key: str, fn: JobFn) -> asyncio.Event:
        """Queue a job and return its cancel event.

        Raises:
            TargetBusyError: If another job holds target_key
            RunError: If the queue is full
        """
        self._ensure_started()
        holder = self._busy.get(target_key)
        if holder is not None:
            raise TargetBusyError(f"Target is busy with run {holder}", run_id=run_id)
        job = _Job(run_id=run_id, target_key=target_key, fn=fn)
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            raise RunError("run queue is full", run_id=run_id)
        self._busy[target_key] = run_id
        self._jobs[run_id] = job
        return job.cancel_event

    def cancel(self, run_id: str) -> bool:
        job = self._jobs.get(run_id)
        if job is None:
            return False
        job.cancel_event.set()
        return True

    async def _work(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await job.fn(job.cancel_event)
            except Exception:
                log.exception("run job crashed", run_id=job.run_id)
            finally:
                self._busy.pop(job.target_key, None)
                self._jobs.pop(job.run_id, None)
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def shutdown(self) -> None:
        for job in list(self._jobs.values()):
            job.cancel_event.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None


# =============================================================================
# Manager
# =============================================================================

class RunManager:
    """Starts runs and answers status/artifact queries.

    Args:
        blobs: Blob store holding runs, configs and the dedup index
        provider_factory: Builds the driver, LLM and extractor for a profile
        worker: Executes real runs (a single-task worker by default)
        dry_run_output: Optional local NDJSON path for dry-run plan records
        max_llm_chars: Text budget sent to the LLM
        environ: Environment overrides for sorter settings (os.environ if None)
        poll_interval: Seconds between polls in stream_status
    """

    def __init__(
        self,
        blobs: "BlobStore",
        provider_factory: Callable[[ConfigProfile], Providers] = default_providers,
        worker: Optional[RunWorker] = None,
        dry_run_output: Optional[str] = None,
        max_llm_chars: int = 12000,
        environ: Optional[Mapping[str, str]] = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.blobs = blobs
        self.store = RunStore(blobs)
        self.configs = ConfigStore(blobs)
        self.provider_factory = provider_factory
        self.worker = worker or RunWorker()
        self.exporter = PlanExporter(dry_run_output)
        self.max_llm_chars = max_llm_chars
        self.environ = environ
        self.poll_interval = poll_interval
        self.folder_locks = FolderLocks()

    # =========================================================================
    # Starting runs
    # =========================================================================

    async def _resolve(self, request: RunRequest) -> Tuple[ConfigProfile, Dict[str, Any]]:
        owner = request.identity.fingerprint
        if owner is None:
            raise RunError("An email or access key is required")
        profile = await asyncio.to_thread(
            self.configs.resolve, owner, request.profile_id, request.email
        )
        meta = {
            "email": request.email,
            "ownerHash": owner,
            "profileId": profile.profile_id,
            "reprocess": request.reprocess,
        }
        return profile, meta

    async def _create(self, run_id: str, mode: str, meta: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.store.ensure_log, run_id)
        await asyncio.to_thread(self.store.write_status, RunRecord(run_id, RUNNING, mode, meta=meta))
        started = "dry-run started" if mode == "dry" else "run started"
        await asyncio.to_thread(self.store.append_log, run_id, {"level": "info", "msg": started})

    async def _finish(self, run_id: str, mode: str, summary: Optional[Dict[str, Any]] = None,
                      error: Optional[str] = None) -> RunRecord:
        label = "dry-run" if mode == "dry" else "run"
        if error is None:
            record = RunRecord(run_id, SUCCEEDED, mode, summary=summary)
            entry = {"level": "info", "msg": f"{label} finished"}
        else:
            record = RunRecord(run_id, FAILED, mode, error=error)
            entry = {"level": "error", "msg": f"{label} failed", "error": error}
        record = await asyncio.to_thread(self.store.write_status, record)
        await asyncio.to_thread(self.store.append_log, run_id, entry)
        log.info("run finished", run_id=run_id, mode=mode, state=record.state, error=error)
        return record

    async def start_dry_run(self, request: RunRequest) -> Dict[str, Any]:
        """Plan every document without touching the store; awaited to completion.

        Raises:
            ConfigNotFoundError: If no profile resolves (no run is created)
            RunError: If the run fails; carries the run id
        """
        profile, meta = await self._resolve(request)
        run_id = new_run_id()
        await self._create(run_id, "dry", meta)
        log.info("dry run started", run_id=run_id, profile_id=profile.profile_id)

        try:
            summary = await self._execute(run_id, "dry", profile, request.reprocess)
        except Exception as e:
            log.exception("dry run failed", run_id=run_id)
            await self._finish(run_id, "dry", error=str(e))
            raise RunError(str(e), run_id=run_id) from e

        await self._finish(run_id, "dry", summary=summary)
        return {"ok": True, "runId": run_id, "summary": summary}

    async def start_run(self, request: RunRequest) -> Dict[str, Any]:
        """Queue a real run and return immediately.

        Raises:
            ConfigNotFoundError: If no profile resolves
            TargetBusyError: If a run for the same target root is in progress
            RunError: If the worker queue is full
        """
        profile, meta = await self._resolve(request)
        target_key = profile.target_root_ref
        holder = self.worker.busy_run(target_key)
        if holder is not None:
            raise TargetBusyError(f"Target is busy with run {holder}")

        run_id = new_run_id()
        await self._create(run_id, "run", meta)

        async def job(cancel_event: asyncio.Event) -> None:
            await self._run_job(run_id, profile, request.reprocess, cancel_event)

        try:
            self.worker.submit(run_id, target_key, job)
        except RunError as e:
            await self._finish(run_id, "run", error=e.code)
            raise
        log.info("run queued", run_id=run_id, profile_id=profile.profile_id)
        return {"ok": True, "runId": run_id}

    async def _run_job(self, run_id: str, profile: ConfigProfile, reprocess: bool,
                       cancel_event: asyncio.Event) -> None:
        try:
            if cancel_event.is_set():
                raise PipelineCancelled("cancelled")
            summary = await self._execute(run_id, "run", profile, reprocess, cancel_event)
        except PipelineCancelled:
            await self._finish(run_id, "run", error="cancelled")
        except Exception as e:
            log.exception("run failed", run_id=run_id)
            await self._finish(run_id, "run", error=str(e))
        else:
            await self._finish(run_id, "run", summary=summary)

    async def _execute(self, run_id: str, mode: str, profile: ConfigProfile, reprocess: bool,
                       cancel_event: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        config = profile.sorter_config(self.environ)
        providers = await asyncio.to_thread(self.provider_factory, profile)
        driver = providers.driver
        source_ref = await asyncio.to_thread(driver.resolve_folder, profile.source_folder_ref)

        index = None
        if config.duplicates.persistent:
            index = BlobHashIndex(self.blobs, profile.target_root_ref, read_only=(mode == "dry"))

        async def on_log(entry: Dict[str, Any]) -> None:
            await asyncio.to_thread(self.store.append_log, run_id, entry)

        async def on_progress(progress: Dict[str, Any]) -> None:
            await asyncio.to_thread(
                self.store.write_status, RunRecord(run_id, RUNNING, mode, progress=progress)
            )

        events = RunEventChannel()
        sink = asyncio.create_task(events.drain(on_log, on_progress, run_id=run_id))
        pipeline = SortingPipeline(
            driver=driver,
            llm=providers.llm,
            extractor=providers.extractor,
            config=config,
            source_ref=source_ref,
            target_root_ref=driver.root_ref,
            dry_run=(mode == "dry"),
            reprocess=reprocess,
            dedup=DedupEngine(index),
            resolver=PathResolver(driver, self.folder_locks),
            exporter=self.exporter,
            events=events,
            cancel_event=cancel_event,
            max_llm_chars=self.max_llm_chars,
        )
        try:
            return await pipeline.run()
        finally:
            # Flush every pipeline event before the terminal status is written
            await events.close()
            await sink

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_status(self, run_id: str) -> Optional[RunRecord]:
        """Raises InvalidStatusError if the status document is corrupt."""
        return await asyncio.to_thread(self.store.read, run_id)

    async def list_runs(self, identity: OwnerIdentity, limit: int = 20) -> List[RunRecord]:
        """The caller's runs, most recently updated first."""
        owner = identity.fingerprint
        if owner is None:
            raise RunError("An email or access key is required")
        limit = max(1, min(MAX_LIST_LIMIT, int(limit)))
        records = await asyncio.to_thread(lambda: list(self.store.iter_records()))
        mine = [r for r in records if r.meta.get("ownerHash") == owner]
        mine.sort(key=lambda r: r.updated_at or "", reverse=True)
        return mine[:limit]

    async def get_artifact_urls(self, run_id: str, ttl_seconds: int = DEFAULT_TTL_SECONDS,
                                identity: Optional[OwnerIdentity] = None) -> Dict[str, Any]:
        """Signed read URLs for the status document and, if present, the log.

        Raises:
            RunNotFoundError: If the run doesn't exist
            ForbiddenError: If the caller doesn't own the run
            InvalidStatusError: If the status document is corrupt
        """
        ttl_seconds = max(MIN_TTL_SECONDS, min(MAX_TTL_SECONDS, int(ttl_seconds)))
        record = await self.get_status(run_id)
        if record is None:
            raise RunNotFoundError(f"Run not found: {run_id}", run_id=run_id)

        expected = record.meta.get("ownerHash") or ""
        provided = (identity.fingerprint if identity else None) or ""
        if not expected or not provided or not hmac.compare_digest(expected, provided):
            raise ForbiddenError("forbidden", run_id=run_id)

        out: Dict[str, Any] = {
            "ok": True,
            "runId": run_id,
            "ttlSeconds": ttl_seconds,
            "statusUrl": await asyncio.to_thread(self.store.signed_status_url, run_id, ttl_seconds),
        }
        if await asyncio.to_thread(self.store.logs_exist, run_id):
            out["logsUrl"] = await asyncio.to_thread(self.store.signed_logs_url, run_id, ttl_seconds)
        log.info("artifacts signed", run_id=run_id, ttl_seconds=ttl_seconds, has_logs="logsUrl" in out)
        return out

    async def stream_status(self, run_id: str, interval: Optional[float] = None) -> AsyncIterator[RunRecord]:
        """Yield the status whenever it changes; stop after a terminal state.

        Raises:
            RunNotFoundError: If the run doesn't exist
        """
        interval = self.poll_interval if interval is None else interval
        last_seen = None
        while True:
            record = await self.get_status(run_id)
            if record is None:
                raise RunNotFoundError(f"Run not found: {run_id}", run_id=run_id)
            marker = (record.state, record.updated_at)
            if marker != last_seen:
                last_seen = marker
                yield record
            if record.is_terminal:
                return
            await asyncio.sleep(interval)

    def cancel(self, run_id: str) -> bool:
        """Request cancellation; the run stops before its next document."""
        cancelled = self.worker.cancel(run_id)
        log.info("cancel requested", run_id=run_id, active=cancelled)
        return cancelled

    async def shutdown(self) -> None:
        await self.worker.shutdown()
