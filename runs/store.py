"""Persistence of run status documents and run logs in a BlobStore.

Layout:
    runs/{runId}/status.json   current RunRecord (overwritten)
    runs/{runId}/logs.ndjson   append-only {ts, level, msg, ...} lines
"""

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, TYPE_CHECKING

import structlog

from runs.errors import InvalidStatusError
from utils.timestamps import utc_now_iso

if TYPE_CHECKING:
    from storage import BlobStore

log = structlog.get_logger(__name__)

RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"
TERMINAL_STATES = (SUCCEEDED, FAILED)


@dataclass
class RunRecord:
    """Status of one run.

    Attributes:
        run_id: run_{iso}_{hex8}
        state: running, succeeded or failed
        mode: "dry" or "run"
        meta: Owner fingerprint, profile id and request flags
        progress: Latest progress counters while running
        summary: Pipeline summary once succeeded
        error: Failure message once failed
        updated_at: ISO timestamp of the last write
    """
    run_id: str
    state: str
    mode: str
    meta: Dict[str, Any] = field(default_factory=dict)
    progress: Optional[Dict[str, Any]] = None
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def ok(self) -> bool:
        return self.state != FAILED

    def to_dict(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "ok": self.ok,
            "runId": self.run_id,
            "state": self.state,
            "mode": self.mode,
            "meta": dict(self.meta),
        }
        if self.progress is not None:
            doc["progress"] = self.progress
        if self.summary is not None:
            doc["summary"] = self.summary
        if self.error is not None:
            doc["error"] = self.error
        doc["updatedAt"] = self.updated_at
        return doc

    @classmethod
    def from_dict(cls, doc: Dict[str, Any]) -> "RunRecord":
        return cls(
            run_id=doc.get("runId", ""),
            state=doc.get("state", RUNNING),
            mode=doc.get("mode", "run"),
            meta=dict(doc.get("meta") or {}),
            progress=doc.get("progress"),
            summary=doc.get("summary"),
            error=doc.get("error"),
            updated_at=doc.get("updatedAt"),
        )


class RunStore:
    """Reads and writes run records and logs. Blocking; thread-safe per instance."""

    def __init__(self, blobs: "BlobStore") -> None:
        self.blobs = blobs
        self._write_lock = threading.Lock()

    @staticmethod
    def status_key(run_id: str) -> str:
        return f"runs/{run_id}/status.json"

    @staticmethod
    def logs_key(run_id: str) -> str:
        return f"runs/{run_id}/logs.ndjson"

    def read(self, run_id: str) -> Optional[RunRecord]:
        """Load a run record, or None if the run doesn't exist.

        Raises:
            InvalidStatusError: If the status document is corrupt
        """
        try:
            doc = self.blobs.read_json(self.status_key(run_id))
        except ValueError as e:
            raise InvalidStatusError(f"Invalid status JSON for {run_id}: {e}", run_id=run_id)
        if doc is None:
            return None
        if not isinstance(doc, dict):
            raise InvalidStatusError(f"Status for {run_id} is not an object", run_id=run_id)
        return RunRecord.from_dict(doc)

    def write_status(self, record: RunRecord) -> RunRecord:
        """Merge a record over the stored one and persist it.

        ``meta`` is merged key by key; progress and summary are kept when
        the new record leaves them unset. A write that would move a
        terminal record to any other state is ignored and the stored
        record returned unchanged.
        """
        with self._write_lock:
            try:
                previous = self.read(record.run_id)
            except InvalidStatusError:
                log.warning("overwriting corrupt status document", run_id=record.run_id)
                previous = None

            if previous is not None:
                if previous.is_terminal and record.state != previous.state:
                    log.warning("ignoring status write after terminal state", run_id=record.run_id,
                                stored=previous.state, attempted=record.state)
                    return previous
                record.meta = {**previous.meta, **record.meta}
                if record.progress is None:
                    record.progress = previous.progress
                if record.summary is None:
                    record.summary = previous.summary

            record.updated_at = utc_now_iso()
            self.blobs.write_json(self.status_key(record.run_id), record.to_dict())
            return record

    def ensure_log(self, run_id: str) -> None:
        key = self.logs_key(run_id)
        if not self.blobs.exists(key):
            self.blobs.write(key, b"", "application/x-ndjson")

    def append_log(self, run_id: str, entry: Dict[str, Any]) -> None:
        line = json.dumps({"ts": utc_now_iso(), **entry}, ensure_ascii=False, default=str) + "\n"
        self.blobs.append(self.logs_key(run_id), line.encode("utf-8"))

    def read_logs(self, run_id: str) -> List[Dict[str, Any]]:
        data = self.blobs.read(self.logs_key(run_id)) or b""
        return [json.loads(line) for line in data.decode("utf-8").splitlines() if line.strip()]

    def iter_records(self) -> Iterator[RunRecord]:
        """All readable run records; corrupt ones are logged and skipped."""
        for key in self.blobs.list("runs/"):
            if not key.endswith("/status.json"):
                continue
            run_id = key[len("runs/"):-len("/status.json")]
            try:
                record = self.read(run_id)
            except InvalidStatusError as e:
                log.warning("skipping corrupt run", run_id=run_id, error=str(e))
                continue
            if record is not None:
                yield record

    def logs_exist(self, run_id: str) -> bool:
        return self.blobs.exists(self.logs_key(run_id))

    def signed_status_url(self, run_id: str, ttl_seconds: int) -> str:
        return self.blobs.signed_url(self.status_key(run_id), ttl_seconds)

    def signed_logs_url(self, run_id: str, ttl_seconds: int) -> str:
        return self.blobs.signed_url(self.logs_key(run_id), ttl_seconds)
