"""
Google Drive v3 connector.

Thin wrapper around the Drive REST API implementing SourceConnector:
- list_page(): GET /files (non-trashed, newest first)
- get_changes_page(): GET /changes
- get_fresh_cursor(): GET /changes/startPageToken

OAuth is out of scope: the connector is handed an already-issued bearer
token. A 401 response drops the token, so is_authenticated() turns False
until a new one is supplied.
"""

from __future__ import annotations

import logging

import httpx

from .config import get_access_token, get_page_size
from .errors import (
    AuthenticationError,
    InvalidRecordError,
    TransientFetchError,
)
from .index.schema import MetadataRecord, record_from_dict
from .source import Change, ChangesPage, ListPage

logger = logging.getLogger(__name__)

DRIVE_API_BASE_URL = "https://www.googleapis.com/drive/v3"

FILE_FIELDS = (
    "id,name,mimeType,parents,webViewLink,iconLink,modifiedTime,size,trashed"
)
LIST_FIELDS = f"nextPageToken,files({FILE_FIELDS})"
CHANGE_FIELDS = (
    f"nextPageToken,newStartPageToken,changes(fileId,removed,file({FILE_FIELDS}))"
)


def record_from_drive(file: dict) -> MetadataRecord:
    """Convert a Drive API file resource to a MetadataRecord."""
    return record_from_dict(file)


class DriveConnector:
    """SourceConnector backed by the Google Drive v3 REST API."""

    def __init__(
        self,
        token: str | None = None,
        base_url: str = DRIVE_API_BASE_URL,
        page_size: int | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the connector.

        Args:
            token: Bearer token (uses DRIVE_SEARCH_ACCESS_TOKEN if None)
            base_url: API root, overridable for tests
            page_size: Files per listing page (uses config default if None)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.token = token if token is not None else get_access_token()
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size or get_page_size()
        self.timeout = timeout
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        }

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str, params: dict | None = None) -> dict:
        """
        Issue an authenticated GET and decode the JSON body.

        Raises:
            AuthenticationError: No token, or the API answered 401
            TransientFetchError: Any other HTTP or transport failure
        """
        if not self.token:
            raise AuthenticationError("Google Drive not authenticated")

        try:
            response = self._client.get(
                path, params=params, headers=self._headers
            )
        except httpx.TransportError as e:
            raise TransientFetchError(f"GET {path} failed: {e}") from e

        if response.status_code == 401:
            self.token = None
            raise AuthenticationError(
                "Authentication expired. Please supply a new token."
            )
        if response.status_code >= 400:
            raise TransientFetchError(
                f"Drive API error: {response.status_code} "
                f"{response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransientFetchError(
                f"GET {path} returned invalid JSON: {e}"
            ) from e

    def authenticate(self) -> bool:
        """Validate the configured token against /about."""
        if not self.token:
            return False
        try:
            self._get("/about", {"fields": "user"})
        except AuthenticationError:
            return False
        except TransientFetchError as e:
            # Network trouble says nothing about the token itself
            logger.warning("Could not verify Drive token: %s", e)
        return self.token is not None

    def is_authenticated(self) -> bool:
        return bool(self.token)

    def list_page(self, cursor: str | None = None) -> ListPage:
        params = {
            "q": "trashed=false",
            "fields": LIST_FIELDS,
            "pageSize": str(self.page_size),
            "orderBy": "modifiedTime desc,name",
        }
        if cursor:
            params["pageToken"] = cursor

        data = self._get("/files", params)
        records = []
        for file in data.get("files") or []:
            try:
                records.append(record_from_drive(file))
            except InvalidRecordError as e:
                logger.warning("Skipping malformed file entry: %s", e)
        return ListPage(
            records=records,
            next_cursor=data.get("nextPageToken"),
        )

    def get_changes_page(self, cursor: str) -> ChangesPage:
        data = self._get(
            "/changes", {"pageToken": cursor, "fields": CHANGE_FIELDS}
        )
        changes = []
        for raw in data.get("changes") or []:
            file_id = raw.get("fileId")
            if not file_id:
                logger.warning("Skipping change entry without fileId: %r", raw)
                continue
            file = raw.get("file")
            # Trashed files arrive with a payload; treat them as removals
            trashed = bool(file and file.get("trashed"))
            try:
                record = (
                    record_from_drive(file) if file and not trashed else None
                )
            except InvalidRecordError as e:
                logger.warning(
                    "Skipping malformed change for %s: %s", file_id, e
                )
                continue
            changes.append(
                Change(
                    id=file_id,
                    removed=bool(raw.get("removed")) or trashed,
                    record=record,
                )
            )
        return ChangesPage(
            changes=changes,
            next_page_cursor=data.get("nextPageToken"),
            terminal_cursor=data.get("newStartPageToken"),
        )

    def get_fresh_cursor(self) -> str:
        data = self._get("/changes/startPageToken")
        token = data.get("startPageToken")
        if not token:
            raise TransientFetchError("Drive returned no startPageToken")
        return token
