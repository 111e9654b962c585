"""Tests for the run lifecycle on local stores with fake providers."""

import asyncio

import pytest

from conftest import INVOICE_TEXT, FakeExtractor, FakeLLM, Gate, add_file
from runs import (
    ConfigNotFoundError, ConfigProfile, ForbiddenError, Providers, RunError, RunManager,
    RunNotFoundError, RunRecord, RunRequest, RunWorker, TargetBusyError,
)
from runs.identity import OwnerIdentity, owner_hash
from runs.store import RunStore
from storage import LocalDriver

EMAIL = "anna@example.org"
REPLIES = {"a.pdf": {"new_filename": "Rechnung Telekom", "target_folder": "Rechnungen"}}


class ProviderFactory:
    """Builds local providers; optionally blocks on a gate first."""

    def __init__(self, root, texts=None, gate=None):
        self.root = root
        self.texts = texts or {"a.pdf": INVOICE_TEXT, "b.pdf": INVOICE_TEXT}
        self.gate = gate

    def __call__(self, profile):
        if self.gate is not None:
            self.gate.wait()
        return Providers(LocalDriver(self.root), FakeLLM(REPLIES), FakeExtractor(self.texts))


@pytest.fixture
def factory(drive_root):
    return ProviderFactory(drive_root)


@pytest.fixture
def manager(blobs, factory):
    return RunManager(blobs, provider_factory=factory, environ={}, poll_interval=0.01)


def save_profile(manager, drive_root, settings=None, profile_id="home"):
    return manager.configs.save_profile(ConfigProfile(
        owner_hash=owner_hash(email=EMAIL),
        profile_id=profile_id,
        label="Home",
        source_folder_ref="inbox",
        target_root_ref=f"local:{drive_root}",
        settings=settings or {},
    ))


def messages(manager, run_id):
    return [e["msg"] for e in manager.store.read_logs(run_id)]


class TestDryRun:

    def test_without_config_creates_no_run(self, manager, blobs):
        with pytest.raises(ConfigNotFoundError):
            asyncio.run(manager.start_dry_run(RunRequest(email=EMAIL)))
        assert blobs.list("runs/") == []

    def test_requires_identity(self, manager):
        with pytest.raises(RunError):
            asyncio.run(manager.start_dry_run(RunRequest()))

    def test_succeeds(self, manager, drive_root):
        save_profile(manager, drive_root)
        add_file(drive_root, "inbox/a.pdf")

        result = asyncio.run(manager.start_dry_run(RunRequest(email=EMAIL)))

        assert result["ok"]
        assert result["summary"]["processed"] == 1
        assert result["summary"]["details"][0]["state"] == "planned"

        record = asyncio.run(manager.get_status(result["runId"]))
        assert record.state == "succeeded"
        assert record.mode == "dry"
        assert record.meta == {"email": EMAIL, "ownerHash": owner_hash(email=EMAIL),
                               "profileId": "home", "reprocess": False}
        assert record.progress["done"] == 1

        msgs = messages(manager, result["runId"])
        assert msgs[0] == "dry-run started"
        assert "planned document" in msgs
        assert msgs[-1] == "dry-run finished"
        # nothing moved
        assert LocalDriver(drive_root).list_files("inbox")[0].name == "a.pdf"

    def test_failure_carries_run_id(self, manager, drive_root):
        save_profile(manager, drive_root)
        manager.configs.save_profile(ConfigProfile(
            owner_hash=owner_hash(email=EMAIL), profile_id="broken", label="Broken",
            source_folder_ref="no-such-folder", target_root_ref=f"local:{drive_root}",
        ))

        with pytest.raises(RunError) as exc:
            asyncio.run(manager.start_dry_run(RunRequest(email=EMAIL, profile_id="broken")))

        run_id = exc.value.run_id
        record = asyncio.run(manager.get_status(run_id))
        assert record.state == "failed"
        assert not record.ok
        assert "no-such-folder" in record.error
        assert messages(manager, run_id)[-1] == "dry-run failed"

    def test_does_not_record_persistent_hashes(self, manager, drive_root, blobs):
        save_profile(manager, drive_root, {"duplicates": {"persistent": True}})
        add_file(drive_root, "inbox/a.pdf")

        asyncio.run(manager.start_dry_run(RunRequest(email=EMAIL)))

        assert blobs.list("dedup/") == []


class TestRun:

    def test_runs_in_background(self, manager, drive_root):
        save_profile(manager, drive_root)
        add_file(drive_root, "inbox/a.pdf")

        async def scenario():
            started = await manager.start_run(RunRequest(email=EMAIL))
            await manager.worker.join()
            streamed = [r async for r in manager.stream_status(started["runId"])]
            await manager.shutdown()
            return started, streamed

        started, streamed = asyncio.run(scenario())

        assert started["ok"]
        assert len(streamed) == 1
        record = streamed[0]
        assert record.state == "succeeded"
        assert record.summary["moved"] == 1
        assert record.summary["ocr_sources"] == {"fake-ocr": 1}

        msgs = messages(manager, started["runId"])
        assert msgs[0] == "run started"
        assert "placed document" in msgs
        assert msgs[-1] == "run finished"
        assert LocalDriver(drive_root).list_files("2024/Rechnungen/Scan")[0].name == \
            "rechnung-telekom-2024-03-03.pdf"

    def test_stream_follows_progress(self, blobs, drive_root):
        gate = Gate()
        manager = RunManager(blobs, provider_factory=ProviderFactory(drive_root, gate=gate),
                             environ={}, poll_interval=0.01)
        save_profile(manager, drive_root)
        add_file(drive_root, "inbox/a.pdf")

        async def scenario():
            started = await manager.start_run(RunRequest(email=EMAIL))
            states = []
            async for record in manager.stream_status(started["runId"]):
                states.append(record.state)
                if len(states) == 1:
                    gate.open()
            await manager.shutdown()
            return states

        states = asyncio.run(scenario())
        assert states[0] == "running"
        assert states[-1] == "succeeded"

    def test_stream_unknown_run(self, manager):
        async def scenario():
            return [r async for r in manager.stream_status("run_missing")]

        with pytest.raises(RunNotFoundError):
            asyncio.run(scenario())

    def test_target_busy(self, blobs, drive_root):
        gate = Gate()
        manager = RunManager(blobs, provider_factory=ProviderFactory(drive_root, gate=gate),
                             environ={}, poll_interval=0.01)
        save_profile(manager, drive_root)
        add_file(drive_root, "inbox/a.pdf")

        async def scenario():
            first = await manager.start_run(RunRequest(email=EMAIL))
            try:
                with pytest.raises(TargetBusyError) as exc:
                    await manager.start_run(RunRequest(email=EMAIL))
            finally:
                gate.open()
            await manager.worker.join()
            # the target is free again once the first run is done
            second = await manager.start_run(RunRequest(email=EMAIL))
            await manager.worker.join()
            await manager.shutdown()
            return first, second, exc.value

        first, second, error = asyncio.run(scenario())

        assert error.code == "target-busy"
        assert first["runId"] in str(error)
        # only the accepted runs have records
        assert sorted(r.run_id for r in manager.store.iter_records()) == \
            sorted([first["runId"], second["runId"]])

    def test_cancel(self, blobs, drive_root):
        gate = Gate()
        manager = RunManager(blobs, provider_factory=ProviderFactory(drive_root, gate=gate),
                             environ={}, poll_interval=0.01)
        save_profile(manager, drive_root)
        add_file(drive_root, "inbox/a.pdf")

        async def scenario():
            started = await manager.start_run(RunRequest(email=EMAIL))
            assert manager.cancel(started["runId"])
            gate.open()
            await manager.worker.join()
            await manager.shutdown()
            return started["runId"]

        run_id = asyncio.run(scenario())

        record = asyncio.run(manager.get_status(run_id))
        assert record.state == "failed"
        assert record.error == "cancelled"
        assert messages(manager, run_id)[-1] == "run failed"
        assert LocalDriver(drive_root).list_files("inbox")[0].name == "a.pdf"

    def test_cancel_unknown_run(self, manager):
        assert not manager.cancel("run_missing")

    def test_full_queue_fails_the_run(self, blobs, drive_root):
        gate = Gate()
        manager = RunManager(blobs, provider_factory=ProviderFactory(drive_root, gate=gate),
                             worker=RunWorker(max_queued=1), environ={}, poll_interval=0.01)
        save_profile(manager, drive_root)
        save_profile(manager, f"{drive_root}-second", profile_id="second")
        save_profile(manager, f"{drive_root}-third", profile_id="third")
        add_file(drive_root, "inbox/a.pdf")

        async def scenario():
            await manager.start_run(RunRequest(email=EMAIL))
            # let the worker take the first job off the queue
            await asyncio.sleep(0.05)
            await manager.start_run(RunRequest(email=EMAIL, profile_id="second"))
            try:
                with pytest.raises(RunError) as exc:
                    await manager.start_run(RunRequest(email=EMAIL, profile_id="third"))
            finally:
                gate.open()
            await manager.worker.join()
            await manager.shutdown()
            return exc.value

        error = asyncio.run(scenario())

        assert not isinstance(error, TargetBusyError)
        assert str(error) == "run queue is full"
        rejected = manager.store.read(error.run_id)
        assert rejected.state == "failed"
        assert rejected.meta["profileId"] == "third"

    def test_persistent_dedup_across_runs(self, manager, drive_root):
        save_profile(manager, drive_root, {"duplicates": {"persistent": True}})

        async def run_once():
            started = await manager.start_run(RunRequest(email=EMAIL))
            await manager.worker.join()
            return await manager.get_status(started["runId"])

        async def scenario():
            add_file(drive_root, "inbox/a.pdf")
            first = await run_once()
            add_file(drive_root, "inbox/b.pdf")
            second = await run_once()
            await manager.shutdown()
            return first, second

        first, second = asyncio.run(scenario())

        assert first.summary["duplicates"] == 0
        assert second.summary["duplicates"] == 1
        assert second.summary["skipped"] == 1


class TestQueries:

    def write_record(self, blobs, run_id, owner, updated_at, state="succeeded"):
        record = RunRecord(run_id, state, "run", meta={"ownerHash": owner}, updated_at=updated_at)
        blobs.write_json(RunStore.status_key(run_id), record.to_dict())

    def test_list_runs_filters_and_orders(self, manager, blobs):
        mine = owner_hash(email=EMAIL)
        self.write_record(blobs, "run_a", mine, "2025-09-01T10:00:00.000Z")
        self.write_record(blobs, "run_b", owner_hash(email="bob@example.org"), "2025-09-02T10:00:00.000Z")
        self.write_record(blobs, "run_c", mine, "2025-09-03T10:00:00.000Z")
        blobs.write(RunStore.status_key("run_d"), b"{corrupt")

        runs = asyncio.run(manager.list_runs(OwnerIdentity(email=EMAIL)))
        assert [r.run_id for r in runs] == ["run_c", "run_a"]

        runs = asyncio.run(manager.list_runs(OwnerIdentity(email=EMAIL), limit=0))
        assert [r.run_id for r in runs] == ["run_c"]

    def test_list_runs_requires_identity(self, manager):
        with pytest.raises(RunError):
            asyncio.run(manager.list_runs(OwnerIdentity()))

    def test_artifacts_not_found(self, manager):
        with pytest.raises(RunNotFoundError):
            asyncio.run(manager.get_artifact_urls("run_missing", identity=OwnerIdentity(email=EMAIL)))

    def test_artifacts_forbidden(self, manager, blobs):
        self.write_record(blobs, "run_a", owner_hash(email=EMAIL), "2025-09-01T10:00:00.000Z")

        with pytest.raises(ForbiddenError):
            asyncio.run(manager.get_artifact_urls("run_a", identity=OwnerIdentity(email="bob@example.org")))
        with pytest.raises(ForbiddenError):
            asyncio.run(manager.get_artifact_urls("run_a"))

    def test_artifacts_without_logs(self, manager, blobs):
        self.write_record(blobs, "run_a", owner_hash(email=EMAIL), "2025-09-01T10:00:00.000Z")

        out = asyncio.run(manager.get_artifact_urls("run_a", 5, OwnerIdentity(email=EMAIL)))

        assert out["ok"]
        assert out["ttlSeconds"] == 60
        assert "status.json" in out["statusUrl"]
        assert "logsUrl" not in out

    def test_artifacts_with_logs(self, manager, blobs):
        self.write_record(blobs, "run_a", owner_hash(access_key="k-1"), "2025-09-01T10:00:00.000Z")
        manager.store.ensure_log("run_a")

        out = asyncio.run(manager.get_artifact_urls("run_a", 10 ** 6, OwnerIdentity(access_key="k-1")))

        assert out["ttlSeconds"] == 86400
        assert "logs.ndjson" in out["logsUrl"]
