"""Google Cloud Storage blob store."""

from datetime import timedelta
from typing import List, Optional

import structlog
from google.api_core import exceptions as gexc
from google.cloud import storage

from .base import StorageError
from .blobs import BlobStore
from utils.retry import retry_on_transient_error, is_transient_network_error

log = structlog.get_logger(__name__)


def _is_retryable_gcs_error(exc: Exception) -> bool:
    if isinstance(exc, (gexc.TooManyRequests, gexc.ServerError)):
        return True
    return is_transient_network_error(exc)


_gcs_retry = retry_on_transient_error(
    is_retryable=_is_retryable_gcs_error,
    max_retries=5,
    base_delay=0.5,
    max_delay=30.0,
)


class GCSBlobStore(BlobStore):
    """BlobStore on a GCS bucket.

    Credentials come from Application Default Credentials
    (``GOOGLE_APPLICATION_CREDENTIALS`` or the runtime service account).
    """

    def __init__(self, bucket_name: str, client: Optional[storage.Client] = None) -> None:
        if not bucket_name:
            raise StorageError("GCS bucket name is required")
        try:
            self.client = client or storage.Client()
        except Exception as e:
            raise StorageError(f"Failed to initialize Cloud Storage client: {e}")
        self.bucket_name = bucket_name
        self.bucket = self.client.bucket(bucket_name)

    @property
    def display_name(self) -> str:
        return f"gs://{self.bucket_name}"

    def read(self, key: str) -> Optional[bytes]:
        blob = self.bucket.blob(key)
        try:
            return _gcs_retry(blob.download_as_bytes)()
        except gexc.NotFound:
            return None
        except gexc.GoogleAPICallError as e:
            raise StorageError(f"Failed to read gs://{self.bucket_name}/{key}: {e}")

    def write(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        blob = self.bucket.blob(key)
        try:
            _gcs_retry(blob.upload_from_string)(data, content_type=content_type)
        except gexc.GoogleAPICallError as e:
            raise StorageError(f"Failed to write gs://{self.bucket_name}/{key}: {e}")

    def exists(self, key: str) -> bool:
        try:
            return _gcs_retry(self.bucket.blob(key).exists)()
        except gexc.GoogleAPICallError as e:
            raise StorageError(f"Failed to stat gs://{self.bucket_name}/{key}: {e}")

    def list(self, prefix: str) -> List[str]:
        try:
            blobs = _gcs_retry(lambda: list(self.client.list_blobs(self.bucket_name, prefix=prefix)))()
        except gexc.GoogleAPICallError as e:
            raise StorageError(f"Failed to list gs://{self.bucket_name}/{prefix}: {e}")
        return sorted(b.name for b in blobs)

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        blob = self.bucket.blob(key)
        try:
            return blob.generate_signed_url(
                version="v4",
                expiration=timedelta(seconds=ttl_seconds),
                method="GET",
            )
        except Exception as e:
            raise StorageError(f"Failed to sign URL for gs://{self.bucket_name}/{key}: {e}")
