"""Google Drive storage driver."""

import io
import os
import re
import tempfile
from typing import Dict, List, Optional

import structlog
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload

from .base import (
    StorageDriver, StorageError, FileInfo, FolderInfo,
    FOLDER_MIME_TYPE, PROCESSED_PROPERTY,
)
from utils.retry import (
    retry_on_transient_error,
    is_transient_network_error,
    TRANSIENT_HTTP_STATUS_CODES,
)

log = structlog.get_logger(__name__)

SCOPES = ['https://www.googleapis.com/auth/drive']

FILE_FIELDS = "id, name, mimeType, parents, appProperties, size"

# Folder IDs are long base64url-ish tokens; anything else is treated as a name
_FOLDER_ID_RE = re.compile(r"^[A-Za-z0-9_-]{20,}$")
_FOLDER_URL_RE = re.compile(r"/folders/([A-Za-z0-9_-]+)")


# ---------------------------------------------------------------------------
# Google Drive Retry Configuration
# ---------------------------------------------------------------------------

def _is_retryable_gdrive_error(exc: Exception) -> bool:
    """Determine if a Google Drive API error should be retried."""
    if isinstance(exc, HttpError):
        return exc.resp.status in TRANSIENT_HTTP_STATUS_CODES
    return is_transient_network_error(exc)


def _log_retry(exc: Exception, attempt: int, delay: float) -> None:
    if isinstance(exc, HttpError):
        error_desc = f"HTTP {exc.resp.status}"
    else:
        error_desc = type(exc).__name__
    log.warning("drive request failed, retrying", error=error_desc,
                attempt=attempt, delay=round(delay, 1))


_drive_retry = retry_on_transient_error(
    is_retryable=_is_retryable_gdrive_error,
    max_retries=5,
    base_delay=1.0,
    max_delay=60.0,
    on_retry=_log_retry,
)


def _execute_with_retry(request):
    """Execute a Google Drive API request with automatic retry."""
    return _drive_retry(request.execute)()


def _download_with_retry(request, destination) -> None:
    """Download a file from Google Drive chunk by chunk, retrying each chunk."""
    downloader = MediaIoBaseDownload(destination, request)
    next_chunk = _drive_retry(downloader.next_chunk)
    done = False
    while not done:
        _, done = next_chunk()


def _escape_query_value(value: str) -> str:
    """Escape a value for use in Google Drive API query strings."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _clip_property(key: str, value: str) -> str:
    """Drive limits each appProperty to 124 bytes of UTF-8 (key + value)."""
    budget = 124 - len(key.encode("utf-8"))
    encoded = value.encode("utf-8")
    if len(encoded) <= budget:
        return value
    return encoded[:budget].decode("utf-8", errors="ignore")


def _to_file_info(item: Dict) -> FileInfo:
    return FileInfo(
        id=item['id'],
        name=item['name'],
        mime_type=item.get('mimeType', 'application/octet-stream'),
        parents=list(item.get('parents', [])),
        app_properties=dict(item.get('appProperties') or {}),
        size=int(item['size']) if item.get('size') else None,
    )


class GDriveDriver(StorageDriver):
    """Storage driver for Google Drive.

    Uses service account authentication. The driver is opened on a root
    folder ID, but every method takes explicit folder/file IDs so files can
    be moved anywhere the service account can write.
    """

    def __init__(self, root_folder_id: str,
                 service_account_file: str = "service_account_key.json") -> None:
        """Initialize Google Drive storage driver.

        Args:
            root_folder_id: Google Drive folder ID to use as root
            service_account_file: Path to service account credentials JSON

        Raises:
            StorageError: If authentication fails or folder can't be accessed
        """
        self.root_folder_id = root_folder_id
        self._root_folder_name: Optional[str] = None

        try:
            self.creds = service_account.Credentials.from_service_account_file(
                service_account_file, scopes=SCOPES
            )
            self.service = build('drive', 'v3', credentials=self.creds, cache_discovery=False)

            result = _execute_with_retry(self.service.files().get(
                fileId=root_folder_id,
                fields="id, name",
                supportsAllDrives=True,
            ))
            self._root_folder_name = result['name']
        except Exception as e:
            raise StorageError(f"Failed to initialize Google Drive: {e}")

    @property
    def display_name(self) -> str:
        name = self._root_folder_name or self.root_folder_id
        return f"{name} (Google Drive)"

    @property
    def root_ref(self) -> str:
        return self.root_folder_id

    def _list_all(self, q: str, fields: str) -> List[Dict]:
        """Run a files.list query and follow nextPageToken."""
        items: List[Dict] = []
        page_token = None
        while True:
            response = _execute_with_retry(self.service.files().list(
                q=q,
                pageSize=100,
                fields=f"nextPageToken, files({fields})",
                pageToken=page_token,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ))
            items.extend(response.get('files', []))
            page_token = response.get('nextPageToken')
            if not page_token:
                return items

    # =========================================================================
    # Read Operations
    # =========================================================================

    def resolve_folder(self, id_or_name: str) -> str:
        """Resolve a folder ID, a Drive folder URL, or a folder name."""
        value = (id_or_name or "").strip()
        if not value:
            return self.root_folder_id

        url_match = _FOLDER_URL_RE.search(value)
        if url_match:
            value = url_match.group(1)

        if _FOLDER_ID_RE.match(value):
            try:
                item = _execute_with_retry(self.service.files().get(
                    fileId=value,
                    fields="id, mimeType",
                    supportsAllDrives=True,
                ))
                if item.get('mimeType') == FOLDER_MIME_TYPE:
                    return item['id']
            except HttpError as e:
                if e.resp.status != 404:
                    raise StorageError(f"Failed to resolve folder {value}: {e}")

        escaped = _escape_query_value(value)
        items = self._list_all(
            f"name='{escaped}' and mimeType='{FOLDER_MIME_TYPE}' and trashed=false",
            "id, name",
        )
        if not items:
            raise StorageError(f"Folder not found: {id_or_name}")
        return items[0]['id']

    def list_files(self, folder_ref: str, only_unprocessed: bool = False) -> List[FileInfo]:
        """List files directly inside a folder."""
        q = f"'{folder_ref}' in parents and trashed=false and mimeType!='{FOLDER_MIME_TYPE}'"
        if only_unprocessed:
            q += f" and not appProperties has {{ key='{PROCESSED_PROPERTY}' and value='1' }}"
        try:
            items = self._list_all(q, FILE_FIELDS)
        except HttpError as e:
            raise StorageError(f"Failed to list files in {folder_ref}: {e}")
        return [_to_file_info(item) for item in items]

    def list_folders(self, folder_ref: str) -> List[FolderInfo]:
        """List immediate subfolders of a folder."""
        try:
            items = self._list_all(
                f"'{folder_ref}' in parents and trashed=false and mimeType='{FOLDER_MIME_TYPE}'",
                "id, name",
            )
        except HttpError as e:
            raise StorageError(f"Failed to list folders in {folder_ref}: {e}")
        return [FolderInfo(id=item['id'], name=item['name']) for item in items]

    def find_folder(self, parent_ref: str, name: str) -> Optional[str]:
        escaped = _escape_query_value(name)
        try:
            results = _execute_with_retry(self.service.files().list(
                q=f"name='{escaped}' and mimeType='{FOLDER_MIME_TYPE}' and '{parent_ref}' in parents and trashed=false",
                fields="files(id, name)",
                pageSize=10,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ))
        except HttpError as e:
            raise StorageError(f"Failed to look up folder {name}: {e}")
        items = results.get('files', [])
        return items[0]['id'] if items else None

    def download_to_temp(self, file: FileInfo) -> str:
        """Download a file to a temporary location."""
        _, ext = os.path.splitext(file.name)
        temp_fd, temp_path = tempfile.mkstemp(suffix=ext)
        os.close(temp_fd)
        try:
            request = self.service.files().get_media(fileId=file.id, supportsAllDrives=True)
            with open(temp_path, 'wb') as f:
                _download_with_retry(request, f)
        except Exception as e:
            os.unlink(temp_path)
            raise StorageError(f"Failed to download file {file.name}: {e}")
        return temp_path

    # =========================================================================
    # Write Operations
    # =========================================================================

    def create_folder(self, parent_ref: str, name: str) -> str:
        try:
            folder = _execute_with_retry(self.service.files().create(
                body={
                    'name': name,
                    'mimeType': FOLDER_MIME_TYPE,
                    'parents': [parent_ref],
                },
                fields='id',
                supportsAllDrives=True,
            ))
        except HttpError as e:
            raise StorageError(f"Failed to create folder {name}: {e}")
        return folder['id']

    def create_file(self, parent_ref: str, name: str, content: bytes,
                    mime_type: str = "application/octet-stream") -> str:
        media = MediaIoBaseUpload(io.BytesIO(content), mimetype=mime_type, resumable=False)
        try:
            created = _execute_with_retry(self.service.files().create(
                body={'name': name, 'parents': [parent_ref]},
                media_body=media,
                fields='id',
                supportsAllDrives=True,
            ))
        except HttpError as e:
            raise StorageError(f"Failed to upload file {name}: {e}")
        return created['id']

    def update_file(self, file: FileInfo, new_name: Optional[str] = None,
                    new_parent: Optional[str] = None,
                    app_properties: Optional[Dict[str, str]] = None) -> FileInfo:
        body: Dict = {}
        if new_name:
            body['name'] = new_name
        if app_properties:
            body['appProperties'] = {k: _clip_property(k, str(v)) for k, v in app_properties.items()}

        kwargs: Dict = {}
        if new_parent is not None and new_parent not in file.parents:
            kwargs['addParents'] = new_parent
            if file.parents:
                kwargs['removeParents'] = ",".join(file.parents)

        try:
            item = _execute_with_retry(self.service.files().update(
                fileId=file.id,
                body=body,
                fields=FILE_FIELDS,
                supportsAllDrives=True,
                **kwargs,
            ))
        except HttpError as e:
            raise StorageError(f"Failed to update file {file.name}: {e}")
        return _to_file_info(item)
