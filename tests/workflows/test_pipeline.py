"""End-to-end tests for SortingPipeline on a LocalDriver."""

import asyncio
import json
import os
from datetime import date

import pytest

from conftest import INVOICE_TEXT, TAX_TEXT, FakeExtractor, FakeLLM, add_file
from drivesorter import PROCESSING_VERSION
from drivesorter.config import SorterConfig
from models.base import FilenameOnlyExtractor
from runs.events import RunEventChannel
from workflows.deduplication import BlobHashIndex, DedupEngine, content_hash
from workflows.dryrun import PlanExporter
from workflows.pipeline import PipelineCancelled, SortingPipeline, derive_year


REPLIES = {
    "a.pdf": {"new_filename": "Rechnung Telekom", "target_folder": "Rechnungen"},
    "c.pdf": {"new_filename": "Einkommensteuerbescheid", "target_folder": "Steuern"},
    "notes.docx": {"new_filename": "Notizen", "target_folder": "Sonstiges"},
}
TEXTS = {"a.pdf": INVOICE_TEXT, "b.pdf": INVOICE_TEXT, "c.pdf": TAX_TEXT}


@pytest.fixture
def inbox(drive_root):
    for name in ("a.pdf", "b.pdf", "c.pdf", "notes.docx"):
        add_file(drive_root, f"inbox/{name}")
    return drive_root


def make_pipeline(driver, settings=None, llm=None, extractor=None, **kwargs):
    return SortingPipeline(
        driver=driver,
        llm=llm or FakeLLM(REPLIES),
        extractor=extractor or FakeExtractor(TEXTS),
        config=SorterConfig.from_settings(settings or {}, environ={}),
        source_ref="inbox",
        target_root_ref="",
        today=lambda: date(2025, 1, 15),
        prompt="Sortiere das Dokument.",
        **kwargs,
    )


def read(root, rel_path):
    with open(os.path.join(root, *rel_path.split("/")), encoding="utf-8") as f:
        return f.read()


class TestRealRun:

    def test_places_documents(self, driver, inbox):
        extractor = FakeExtractor(TEXTS)
        summary = asyncio.run(make_pipeline(driver, extractor=extractor).run())

        assert summary["processed"] == 4
        assert summary["moved"] == 3
        assert summary["skipped"] == 1
        assert summary["duplicates"] == 1
        assert summary["errors"] == 0
        assert summary["ocr_sources"] == {"fake-ocr": 3, "filename-only": 1}

        assert os.path.exists(os.path.join(inbox, "2024/Rechnungen/Scan/rechnung-telekom-2024-03-03.pdf"))
        assert os.path.exists(os.path.join(
            inbox, "2023/Steuern/Scan/einkommensteuerbescheid-2023-bescheid-2024-05-17.pdf"))
        assert os.path.exists(os.path.join(inbox, "2025/Sonstiges/Scan/notizen.docx"))
        assert [f.name for f in driver.list_files("inbox")] == ["b.pdf"]

        # every OCR'd document is released, the duplicate included
        assert sorted(extractor.released) == ["a.pdf", "b.pdf", "c.pdf"]

    def test_writes_transcript_and_sidecars(self, driver, inbox):
        asyncio.run(make_pipeline(driver).run())

        transcript = read(inbox, "2024/Rechnungen/Texttranskript/rechnung-telekom-2024-03-03.txt")
        assert transcript == INVOICE_TEXT

        meta = json.loads(read(inbox, "2024/Rechnungen/Texttranskript/rechnung-telekom-2024-03-03.meta.json"))
        assert meta["file_id"] == "inbox/a.pdf"
        assert meta["original_name"] == "a.pdf"
        assert meta["sha256"] == content_hash(INVOICE_TEXT)
        assert meta["year_folder"] == "2024"
        assert meta["subfolder"] == "Rechnungen"
        assert meta["document_date"] == "2024-03-03"
        assert meta["invoice_number"] == "RE-4711"
        assert meta["ocr_source"] == "fake-ocr"
        assert meta["llm_model"] == "fake-model"

        assert len(driver.list_files("_registry")) == 3

    def test_tags_placed_files(self, driver, inbox):
        asyncio.run(make_pipeline(driver).run())

        placed = driver.list_files("2024/Rechnungen/Scan")[0]
        assert placed.app_properties == {
            "ds_processed": "1",
            "ds_year": "2024",
            "ds_sub": "Rechnungen",
            "ds_newname": "rechnung-telekom-2024-03-03.pdf",
            "ds_version": PROCESSING_VERSION,
        }

    def test_skips_processed_documents(self, driver, drive_root):
        add_file(drive_root, "inbox/a.pdf")
        add_file(drive_root, "inbox/c.pdf")
        done = driver.list_files("inbox")[0]
        driver.update_file(done, app_properties={"ds_processed": "1"})

        summary = asyncio.run(make_pipeline(driver).run())
        assert summary["processed"] == 1

        summary = asyncio.run(make_pipeline(driver, reprocess=True).run())
        assert summary["processed"] == 1  # a.pdf again; c.pdf has left the inbox

    def test_document_errors_do_not_stop_the_run(self, driver, inbox):
        llm = FakeLLM(REPLIES, fail_for={"a.pdf"})
        extractor = FakeExtractor(TEXTS)

        summary = asyncio.run(make_pipeline(driver, llm=llm, extractor=extractor).run())

        assert summary["errors"] == 1
        errored = [d for d in summary["details"] if d["state"] == "errored"]
        assert errored[0]["file"] == "a.pdf"
        assert "model unavailable" in errored[0]["error"]
        # a.pdf's hash was recorded before the model failed, so b.pdf still counts as its duplicate
        assert [f.name for f in driver.list_files("inbox")] == ["a.pdf", "b.pdf"]
        assert summary["duplicates"] == 1
        assert "a.pdf" in extractor.released
        assert summary["moved"] == 2

    def test_bad_model_reply_is_a_document_error(self, driver, drive_root):
        add_file(drive_root, "inbox/a.pdf")

        class ProseLLM(FakeLLM):
            def complete(self, messages):
                return "Das ist eine Rechnung."

        summary = asyncio.run(make_pipeline(driver, llm=ProseLLM()).run())
        assert summary["errors"] == 1
        assert summary["details"][0]["state"] == "errored"

    def test_no_temp_files_left(self, driver, inbox, monkeypatch):
        created = []
        original = driver.download_to_temp

        def tracking(file):
            path = original(file)
            created.append(path)
            return path

        monkeypatch.setattr(driver, "download_to_temp", tracking)
        asyncio.run(make_pipeline(driver).run())

        assert len(created) == 4
        assert not any(os.path.exists(p) for p in created)


class TestNaming:

    def test_invoice_named_from_text_metadata(self, driver, drive_root):
        add_file(drive_root, "inbox/scan.pdf")
        text = "Muster Energie GmbH\nRechnungsnummer: 12345\nDatum: 15.08.2024"
        llm = FakeLLM({"scan.pdf": {"new_filename": "", "target_folder": "Rechnungen"}})

        summary = asyncio.run(make_pipeline(driver, llm=llm, extractor=FakeExtractor({"scan.pdf": text})).run())

        assert summary["moved"] == 1
        assert os.path.exists(os.path.join(
            drive_root, "2024/Rechnungen/Scan/rechnungen-muster-energie-gmbh-2024-08-15-12345.pdf"))

    def test_tax_document_ignores_placeholder_issue_date(self, driver, drive_root):
        add_file(drive_root, "inbox/est.pdf")
        text = "Finanzamt Berlin\nSteuerjahr 2023\nDatum: 01.01.2024"
        llm = FakeLLM({"est.pdf": {"new_filename": "est", "target_folder": "Steuern"}})

        summary = asyncio.run(make_pipeline(driver, llm=llm, extractor=FakeExtractor({"est.pdf": text})).run())

        assert summary["moved"] == 1
        assert os.path.exists(os.path.join(drive_root, "2023/Steuern/Scan/est-2023.pdf"))


class TestRelease:

    def test_filename_only_documents_are_not_released(self, driver, drive_root):
        add_file(drive_root, "inbox/a.pdf")
        add_file(drive_root, "inbox/notes.docx")
        extractor = FakeExtractor(TEXTS)

        summary = asyncio.run(make_pipeline(driver, extractor=extractor).run())

        assert summary["errors"] == 0
        assert extractor.released == ["a.pdf"]

    def test_release_failure_does_not_fail_the_document(self, driver, inbox):

        class LeakyExtractor(FakeExtractor):
            def release(self, extraction):
                raise OSError("bucket unavailable")

        summary = asyncio.run(make_pipeline(driver, extractor=LeakyExtractor(TEXTS)).run())

        assert summary["errors"] == 0
        assert summary["moved"] == 3
        assert [f.name for f in driver.list_files("inbox")] == ["b.pdf"]


class TestDuplicates:

    def test_passed_engine_is_used_even_when_empty(self, driver, blobs):
        engine = DedupEngine(BlobHashIndex(blobs, "root"))
        assert len(engine) == 0
        assert make_pipeline(driver, dedup=engine).dedup is engine

    def test_filename_only_extractor_output_is_not_deduplicated(self, driver, drive_root):
        for name in ("x.pdf", "y.pdf", "z.pdf"):
            add_file(drive_root, f"inbox/{name}")
        llm = FakeLLM({
            "x.pdf": {"new_filename": "x", "target_folder": "Sonstiges"},
            "y.pdf": {"new_filename": "y", "target_folder": "Sonstiges"},
            "z.pdf": {"new_filename": "z", "target_folder": "Sonstiges"},
        })

        summary = asyncio.run(make_pipeline(driver, llm=llm, extractor=FilenameOnlyExtractor()).run())

        assert summary["duplicates"] == 0
        assert summary["moved"] == 3
        assert summary["ocr_sources"] == {"filename-only": 3}

    def test_failed_document_is_not_its_own_duplicate_next_run(self, driver, drive_root, blobs):
        add_file(drive_root, "inbox/a.pdf")

        first = asyncio.run(make_pipeline(
            driver, llm=FakeLLM(REPLIES, fail_for={"a.pdf"}),
            dedup=DedupEngine(BlobHashIndex(blobs, "root")),
        ).run())
        assert first["errors"] == 1

        second = asyncio.run(make_pipeline(driver, dedup=DedupEngine(BlobHashIndex(blobs, "root"))).run())

        assert second["duplicates"] == 0
        assert second["moved"] == 1
        assert second["details"][0]["state"] == "placed"
        assert os.path.exists(os.path.join(drive_root, "2024/Rechnungen/Scan/rechnung-telekom-2024-03-03.pdf"))

    def test_move_policy(self, driver, inbox):
        settings = {"duplicates": {"policy": "move", "rename_suffix": "dup", "subfolder_name": "Duplikate"}}
        summary = asyncio.run(make_pipeline(driver, settings).run())

        digest = content_hash(INVOICE_TEXT)
        moved_name = f"b-dup-{digest[:8]}.pdf"
        assert summary["duplicates"] == 1
        assert summary["moved"] == 4
        assert os.path.exists(os.path.join(inbox, "2024/Duplikate/Scan", moved_name))
        assert os.path.exists(os.path.join(inbox, "2024/Duplikate/Texttranskript", f"b-dup-{digest[:8]}.txt"))

        dup = driver.list_files("2024/Duplikate/Scan")[0]
        assert dup.app_properties["ds_duplicate_of"] == "inbox/a.pdf"
        assert dup.app_properties["ds_processed"] == "1"

    def test_filename_only_documents_are_not_deduplicated(self, driver, drive_root):
        add_file(drive_root, "inbox/x.docx")
        add_file(drive_root, "inbox/y.docx")
        llm = FakeLLM({
            "x.docx": {"new_filename": "x", "target_folder": "Sonstiges"},
            "y.docx": {"new_filename": "y", "target_folder": "Sonstiges"},
        })
        summary = asyncio.run(make_pipeline(driver, llm=llm).run())
        assert summary["duplicates"] == 0
        assert summary["moved"] == 2

    def test_empty_ocr_text_matches(self, driver, drive_root):
        add_file(drive_root, "inbox/blank1.pdf")
        add_file(drive_root, "inbox/blank2.pdf")
        summary = asyncio.run(make_pipeline(driver, extractor=FakeExtractor({})).run())
        assert summary["duplicates"] == 1

    def test_persistent_index_across_runs(self, driver, drive_root, blobs):
        add_file(drive_root, "inbox/a.pdf")
        asyncio.run(make_pipeline(driver, dedup=DedupEngine(BlobHashIndex(blobs, "root"))).run())

        add_file(drive_root, "inbox/b.pdf")
        summary = asyncio.run(make_pipeline(driver, dedup=DedupEngine(BlobHashIndex(blobs, "root"))).run())

        assert summary["duplicates"] == 1
        assert summary["details"][0]["duplicate_of"] == "inbox/a.pdf"


class TestDryRun:

    def test_plans_without_mutating(self, driver, inbox, temp_dir):
        out = os.path.join(temp_dir, "plan.ndjson")
        summary = asyncio.run(make_pipeline(driver, dry_run=True, exporter=PlanExporter(out)).run())

        assert summary["moved"] == 0
        assert summary["skipped"] == 1
        assert [d["state"] for d in summary["details"]] == ["planned", "skipped-duplicate", "planned", "planned"]
        assert [f.name for f in driver.list_folders("")] == ["inbox"]
        assert len(driver.list_files("inbox")) == 4
        assert all(not f.app_properties for f in driver.list_files("inbox"))

        with open(out, encoding="utf-8") as f:
            records = [json.loads(line) for line in f]
        assert len(records) == 4

        first = records[0]
        assert first["file"]["name"] == "a.pdf"
        assert first["plan"]["wouldMove"] == "2024/Rechnungen/Scan/rechnung-telekom-2024-03-03.pdf"
        assert first["plan"]["wouldUploadTxt"] == "2024/Rechnungen/Texttranskript/rechnung-telekom-2024-03-03.txt"
        assert first["plan"]["ensure"][0] == "2024"
        assert first["exists"] == {
            "2024": False,
            "2024/Rechnungen": False,
            "2024/Rechnungen/Scan": False,
            "2024/Rechnungen/Texttranskript": False,
        }
        assert first["transcript"]["sha256"] == content_hash(INVOICE_TEXT)
        assert first["llm"]["model"] == "fake-model"

        assert records[1]["duplicate_of"]["name"] == "a.pdf"
        assert records[1]["duplicate_policy"] == "skip"


class TestEventsAndCancellation:

    def test_emits_logs_and_progress(self, driver, inbox):
        logs, progress = [], []

        async def run():
            events = RunEventChannel()

            async def on_log(entry):
                logs.append(entry)

            async def on_progress(p):
                progress.append(p)

            sink = asyncio.create_task(events.drain(on_log, on_progress))
            await make_pipeline(driver, events=events).run()
            await events.close()
            await sink

        asyncio.run(run())

        assert [p["done"] for p in progress] == [1, 2, 3, 4]
        assert progress[-1]["total"] == 4
        assert any(e["msg"] == "duplicate detected" for e in logs)
        assert logs[-1]["msg"] == "pipeline finished"

    def test_cancel_before_first_document(self, driver, inbox):
        async def run():
            cancel = asyncio.Event()
            cancel.set()
            await make_pipeline(driver, cancel_event=cancel).run()

        with pytest.raises(PipelineCancelled):
            asyncio.run(run())
        assert len(driver.list_files("inbox")) == 4


class TestDeriveYear:

    def test_tax_phrase_overrides_for_tax_category(self):
        config = SorterConfig()
        assert derive_year("Steuerjahr 2021", "Steuern", "2024", config) == "2021"

    def test_ignored_outside_tax_category(self):
        config = SorterConfig()
        assert derive_year("Steuerjahr 2021", "Bank", "2024", config) == "2024"
