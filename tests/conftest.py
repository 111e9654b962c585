"""Shared fixtures: temp folders, local stores and fake model providers."""

import json
import os
import re
import shutil
import tempfile
import threading

import pytest

from models.base import LLM, LLMError, Extraction, TextExtractor
from storage import LocalBlobStore, LocalDriver


class FakeLLM(LLM):
    """Answers with a canned JSON reply per original filename."""

    def __init__(self, replies=None, default=None, fail_for=()):
        self.replies = dict(replies or {})
        self.default = default or {"new_filename": "", "target_folder": "Sonstiges"}
        self.fail_for = set(fail_for)
        self.calls = []

    @property
    def name(self):
        return "fake"

    @property
    def model(self):
        return "fake-model"

    def complete(self, messages):
        user = messages[-1]["content"]
        original = re.search(r"Original filename: (.+)", user).group(1).strip()
        self.calls.append(original)
        if original in self.fail_for:
            raise LLMError(f"model unavailable for {original}")
        return json.dumps(self.replies.get(original, self.default))


class FakeExtractor(TextExtractor):
    """Returns canned text per original filename and records releases."""

    def __init__(self, texts=None):
        self.texts = dict(texts or {})
        self.extracted = []
        self.released = []

    @property
    def name(self):
        return "fake-ocr"

    def extract(self, local_path, original_name, mime_class):
        assert os.path.exists(local_path)
        self.extracted.append(original_name)
        return Extraction(
            text=self.texts.get(original_name, ""),
            source=self.name,
            artifacts={"name": original_name},
        )

    def release(self, extraction):
        self.released.append(extraction.artifacts["name"])


class Gate:
    """Blocks a worker thread until the test opens it."""

    def __init__(self):
        self._event = threading.Event()

    def wait(self):
        assert self._event.wait(timeout=10), "gate never opened"

    def open(self):
        self._event.set()


INVOICE_TEXT = "Telekom Deutschland GmbH\nRechnung Nr. RE-4711\nDatum: 03.03.2024\nBetrag 49,95 EUR"
TAX_TEXT = "Finanzamt Berlin\nBescheid für 2023 über Einkommensteuer\nSteuerjahr 2023\nDatum: 17.05.2024"


@pytest.fixture
def temp_dir():
    dir_path = tempfile.mkdtemp(prefix="drivesorter_test_")
    yield dir_path
    shutil.rmtree(dir_path, ignore_errors=True)


@pytest.fixture
def drive_root(temp_dir):
    """Target root with an 'inbox' source folder."""
    root = os.path.join(temp_dir, "drive")
    os.makedirs(os.path.join(root, "inbox"))
    return root


@pytest.fixture
def driver(drive_root):
    return LocalDriver(drive_root)


@pytest.fixture
def blobs(temp_dir):
    return LocalBlobStore(os.path.join(temp_dir, "state"), secret=b"test-secret")


def add_file(root, rel_path, content=b"%PDF-1.4 test"):
    path = os.path.join(root, *rel_path.split("/"))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(content)
    return path
