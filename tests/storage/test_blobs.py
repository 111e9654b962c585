"""Tests for LocalBlobStore and GCSBlobStore (with a mocked client)."""

import os
import tempfile
import shutil
from unittest import mock
from urllib.parse import parse_qs, urlparse

import pytest
from google.api_core import exceptions as gexc

from storage import GCSBlobStore, LocalBlobStore, StorageError, create_blob_store


@pytest.fixture
def temp_dir():
    dir_path = tempfile.mkdtemp(prefix="drivesorter_test_")
    yield dir_path
    shutil.rmtree(dir_path, ignore_errors=True)


@pytest.fixture
def store(temp_dir):
    return LocalBlobStore(os.path.join(temp_dir, "state"), secret=b"s3cret")


class TestLocalBlobStore:

    def test_read_missing_returns_none(self, store):
        assert store.read("runs/x/status.json") is None
        assert not store.exists("runs/x/status.json")

    def test_write_and_read(self, store):
        store.write("runs/x/status.json", b"{}")
        assert store.read("runs/x/status.json") == b"{}"
        assert store.exists("runs/x/status.json")

    def test_overwrite(self, store):
        store.write("a.json", b"1")
        store.write("a.json", b"2")
        assert store.read("a.json") == b"2"

    def test_append_creates_then_extends(self, store):
        store.append("runs/x/logs.ndjson", b"one\n")
        store.append("runs/x/logs.ndjson", b"two\n")
        assert store.read("runs/x/logs.ndjson") == b"one\ntwo\n"

    def test_json_helpers(self, store):
        store.write_json("configs/a.json", {"label": "Privat", "n": 1})
        assert store.read_json("configs/a.json") == {"label": "Privat", "n": 1}
        assert store.read_json("configs/missing.json") is None

    def test_read_json_invalid_raises_value_error(self, store):
        store.write("bad.json", b"{not json")
        with pytest.raises(ValueError):
            store.read_json("bad.json")

    def test_list_by_prefix_sorted(self, store):
        store.write("runs/b/status.json", b"{}")
        store.write("runs/a/status.json", b"{}")
        store.write("configs/x.json", b"{}")
        assert store.list("runs/") == ["runs/a/status.json", "runs/b/status.json"]

    def test_key_cannot_escape_root(self, store):
        with pytest.raises(StorageError):
            store.write("../outside.json", b"{}")

    def test_signed_url_verifies(self, store):
        store.write("runs/x/status.json", b"{}")
        url = store.signed_url("runs/x/status.json", 60)
        parsed = urlparse(url)
        params = parse_qs(parsed.query)

        assert parsed.scheme == "file"
        assert parsed.path.endswith("runs/x/status.json")
        expires = int(params["expires"][0])
        signature = params["signature"][0]
        assert store.verify_signature("runs/x/status.json", expires, signature)
        assert not store.verify_signature("runs/y/status.json", expires, signature)
        assert not store.verify_signature("runs/x/status.json", expires - 3600, signature)


class TestGCSBlobStore:

    @pytest.fixture
    def client(self):
        return mock.MagicMock()

    @pytest.fixture
    def gcs(self, client):
        return GCSBlobStore("my-bucket", client=client)

    def test_display_name(self, gcs):
        assert gcs.display_name == "gs://my-bucket"

    def test_requires_bucket(self, client):
        with pytest.raises(StorageError):
            GCSBlobStore("", client=client)

    def test_read_not_found_is_none(self, gcs, client):
        blob = client.bucket.return_value.blob.return_value
        blob.download_as_bytes.side_effect = gexc.NotFound("missing")
        assert gcs.read("runs/x/status.json") is None

    def test_write_uploads_with_content_type(self, gcs, client):
        gcs.write("runs/x/status.json", b"{}", "application/json")
        blob = client.bucket.return_value.blob.return_value
        blob.upload_from_string.assert_called_once_with(b"{}", content_type="application/json")

    def test_list_returns_sorted_names(self, gcs, client):
        b1, b2 = mock.Mock(), mock.Mock()
        b1.name, b2.name = "runs/b/status.json", "runs/a/status.json"
        client.list_blobs.return_value = [b1, b2]
        assert gcs.list("runs/") == ["runs/a/status.json", "runs/b/status.json"]
        client.list_blobs.assert_called_once_with("my-bucket", prefix="runs/")

    def test_signed_url_is_v4_get(self, gcs, client):
        blob = client.bucket.return_value.blob.return_value
        blob.generate_signed_url.return_value = "https://signed"
        assert gcs.signed_url("runs/x/status.json", 120) == "https://signed"
        kwargs = blob.generate_signed_url.call_args.kwargs
        assert kwargs["version"] == "v4"
        assert kwargs["method"] == "GET"
        assert kwargs["expiration"].total_seconds() == 120

    def test_transient_errors_are_retried(self, gcs, client):
        blob = client.bucket.return_value.blob.return_value
        blob.download_as_bytes.side_effect = [gexc.ServiceUnavailable("busy"), b"ok"]
        assert gcs.read("k") == b"ok"
        assert blob.download_as_bytes.call_count == 2


class TestCreateBlobStore:

    def test_local_without_bucket(self, temp_dir):
        store = create_blob_store(None, os.path.join(temp_dir, "state"))
        assert isinstance(store, LocalBlobStore)
