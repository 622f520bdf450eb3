"""
HTTP session for communicating with an Aggregate tabular-data server.

Handles authenticated HTTP communication with retry logic and error
classification for:
- table resource: schema and current data version
- rows: cursor-paginated row pages and batched row uploads
- attachments: per-row manifests, file download and file upload
- reset: invalidating server-side table state
"""

import logging
import mimetypes
import os
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote, urljoin

import requests
from requests.adapters import HTTPAdapter
from requests.auth import HTTPBasicAuth
from urllib3.util.retry import Retry

from ..models.config import ServerConnection, SyncSettings
from ..models.data_models import AttachmentRef, Row, RowError, RowPage, TableSchema
from ..models.errors import (
    AuthError, NetworkError, NotFoundError, RequestRejectedError, SchemaError,
    SyncError, VersionConflictError, VersionConflictReason
)

RETRY_STATUS_CODES = [429, 500, 502, 503, 504]
# POST (row batches, reset) is sent once and never replayed
IDEMPOTENT_METHODS = ["HEAD", "GET", "PUT", "DELETE", "OPTIONS", "TRACE"]
DOWNLOAD_CHUNK_SIZE = 64 * 1024


class ServerSession:
    """
    HTTP client for one Aggregate server and app.

    Transient failures (connection errors, timeouts, 429 and 5xx) are retried
    by the transport with exponential backoff. A POST is only retried when the
    connection could not be established. Everything else is mapped onto the
    engine's error taxonomy and raised.
    """

    def __init__(self, connection: ServerConnection, timeout: int = 30, max_retries: int = 3,
                 backoff_factor: float = 1.0):
        """
        Initialize the session with a server connection and transport configuration.

        Args:
            connection: Server endpoint, app id and credentials
            timeout: Request timeout in seconds
            max_retries: Maximum number of retry attempts for transient failures
            backoff_factor: Base of the exponential backoff between retries
        """
        self.connection = connection
        self.base_url = connection.base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.logger = logging.getLogger(__name__)

        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "X-OpenDataKit-Version": "2.0"
        })
        if not connection.is_anonymous:
            self.session.auth = HTTPBasicAuth(connection.username, connection.password)

        # Configure retry strategy
        retry_strategy = Retry(
            total=max_retries,
            status_forcelist=RETRY_STATUS_CODES,
            allowed_methods=IDEMPOTENT_METHODS,
            backoff_factor=backoff_factor,
            respect_retry_after_header=True,
            raise_on_status=False
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    @classmethod
    def from_settings(cls, connection: ServerConnection, settings: SyncSettings) -> 'ServerSession':
        return cls(
            connection,
            timeout=settings.timeout,
            max_retries=settings.max_retries,
            backoff_factor=settings.backoff_factor
        )

    def __enter__(self) -> 'ServerSession':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def table_url(self, table_id: str) -> str:
        return f"{self.base_url}/{quote(self.connection.app_id, safe='')}/tables/{quote(table_id, safe='')}"

    def _make_request(self, method: str, url: str, **kwargs) -> requests.Response:
        """
        Make HTTP request with error handling and logging.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Absolute request URL
            **kwargs: Additional arguments for requests

        Returns:
            Response object

        Raises:
            SyncError: A subclass matching the failure (network, auth, not found, ...)
        """
        try:
            self.logger.debug(f"Making {method} request to {url}")
            response = self.session.request(
                method=method,
                url=url,
                timeout=self.timeout,
                **kwargs
            )

            self.logger.debug(f"Response status: {response.status_code}")
            response.raise_for_status()
            return response

        except requests.exceptions.HTTPError as e:
            error = self._classify_http_error(method, url, e.response)
            self.logger.error(error.message)
            raise error from e

        except requests.exceptions.RequestException as e:
            error_msg = f"Aggregate request failed after {self.max_retries} retries: {method} {url} - {str(e)}"
            self.logger.error(error_msg)
            raise NetworkError(error_msg) from e

    def _classify_http_error(self, method: str, url: str, response: Optional[requests.Response]) -> SyncError:
        status = response.status_code if response is not None else None
        message = f"Aggregate request failed: {method} {url} - HTTP {status}"

        if status in (401, 403):
            return AuthError(f"{message} (credentials rejected)")
        if status == 404:
            return NotFoundError(f"{message} (not found)")
        if status in (409, 412):
            return VersionConflictError(f"{message} (data version conflict)",
                                        reason=VersionConflictReason.STALE)
        if status is None or status in RETRY_STATUS_CODES:
            return NetworkError(f"{message} (gave up after {self.max_retries} retries)")
        return RequestRejectedError(message, status_code=status)

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise SchemaError(f"Server returned a non-JSON body for {response.url}") from e

    def fetch_table(self, table_id: str) -> Dict[str, Any]:
        """Return the raw table resource (schema ETag, data version, columns)."""
        self.logger.info(f"Fetching table resource for: {table_id}")
        response = self._make_request("GET", self.table_url(table_id))
        payload = self._json(response)
        if not isinstance(payload, dict):
            raise SchemaError(f"Table resource for {table_id} is not a JSON object")
        return payload

    def fetch_schema(self, table_id: str) -> TableSchema:
        """
        Get the table's column definition and current data version.

        Raises:
            AuthError, NotFoundError, NetworkError: transport and access failures
            SchemaError: the server returned a malformed definition
        """
        payload = self.fetch_table(table_id)
        schema = TableSchema.from_json(payload)
        if not schema.table_id:
            schema = TableSchema(table_id, schema.schema_etag, schema.data_version, schema.columns)
        self.logger.debug(f"Table {table_id} has {len(schema.columns)} top-level columns, "
                          f"data version {schema.data_version}")
        return schema

    def fetch_row_page(self, table_id: str, cursor: Optional[str] = None, fetch_limit: int = 1000) -> RowPage:
        """
        Get one page of rows.

        Args:
            table_id: Table to read
            cursor: Continuation cursor from the previous page, None for the first page
            fetch_limit: Maximum number of rows the server should return

        Returns:
            RowPage with the parsed rows and the next cursor (None at end of stream)
        """
        params: Dict[str, Any] = {"fetchLimit": fetch_limit}
        if cursor:
            params["cursor"] = cursor

        response = self._make_request("GET", f"{self.table_url(table_id)}/rows", params=params)
        payload = self._json(response)

        rows_data = payload.get("rows") if isinstance(payload, dict) else None
        if not isinstance(rows_data, list):
            raise SchemaError(f"Row page for {table_id} has no rows list")

        rows: List[Row] = []
        rejected: List[RowError] = []
        for row_data in rows_data:
            try:
                rows.append(Row.from_json(row_data))
            except SchemaError as e:
                self.logger.warning(f"Skipping malformed row: {e.message}")
                rejected.append(RowError(row_id=e.row_id, message=e.message))

        next_cursor = payload.get("webSafeResumeCursor") or None
        if not payload.get("hasMoreResults", next_cursor is not None):
            next_cursor = None

        return RowPage(rows=rows, next_cursor=next_cursor, rejected=rejected)

    def iter_row_pages(self, table_id: str, fetch_limit: int = 1000) -> Iterator[RowPage]:
        """
        Follow continuation cursors until the server stops returning one.

        Pages are fetched lazily: the next request is only issued when the
        caller asks for the next page.
        """
        cursor: Optional[str] = None
        seen_cursors = set()
        while True:
            page = self.fetch_row_page(table_id, cursor=cursor, fetch_limit=fetch_limit)
            yield page

            if page.next_cursor is None:
                return
            if page.next_cursor in seen_cursors:
                raise SchemaError(f"Server repeated pagination cursor for {table_id}")
            seen_cursors.add(page.next_cursor)
            cursor = page.next_cursor

    def fetch_attachment_manifest(self, table_id: str, row_id: str) -> List[AttachmentRef]:
        """Return the attachment references for one row."""
        url = f"{self.table_url(table_id)}/attachments/{quote(row_id, safe='')}/manifest"
        payload = self._json(self._make_request("GET", url))

        files = payload.get("files") if isinstance(payload, dict) else None
        if not isinstance(files, list):
            raise SchemaError(f"Attachment manifest for row {row_id} has no files list", row_id=row_id)

        refs = []
        for entry in files:
            ref = AttachmentRef.from_manifest(row_id, entry)
            ref.remote_uri = urljoin(f"{self.table_url(table_id)}/", ref.remote_uri)
            refs.append(ref)
        return refs

    def download_attachment(self, url: str, destination: Path) -> int:
        """
        Stream a file to disk.

        The body is written to a ``.part`` file first and moved into place once
        complete, so an interrupted transfer never leaves a truncated file.

        Returns:
            Number of bytes written
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")

        response = self._make_request("GET", url, stream=True)
        written = 0
        try:
            with open(partial, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
            os.replace(partial, destination)
        except requests.exceptions.RequestException as e:
            partial.unlink(missing_ok=True)
            raise NetworkError(f"Download interrupted: {url} - {str(e)}") from e
        except OSError:
            partial.unlink(missing_ok=True)
            raise
        finally:
            response.close()

        self.logger.debug(f"Downloaded {written} bytes from {url} to {destination}")
        return written

    def upload_attachment(self, table_id: str, row_id: str, file_name: str, path: Path) -> None:
        """Upload one local file as an attachment of a row."""
        url = (f"{self.table_url(table_id)}/attachments/{quote(row_id, safe='')}"
               f"/file/{quote(file_name)}")
        content_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"

        with open(path, "rb") as file_stream:
            self._make_request("PUT", url, data=file_stream, headers={"Content-Type": content_type})
        self.logger.debug(f"Uploaded attachment {file_name} for row {row_id}")

    def post_rows(self, table_id: str, rows: List[Dict[str, Any]], data_version: str) -> List[Dict[str, Any]]:
        """
        Upload a batch of rows.

        Args:
            table_id: Table to write
            rows: Row payloads ({"id", "rowETag", "values"})
            data_version: Data version approved for this upload

        Returns:
            Per-row outcome dictionaries as reported by the server

        Raises:
            VersionConflictError: The server's table generation moved on
        """
        if not rows:
            raise ValueError("rows cannot be empty")

        self.logger.info(f"Posting {len(rows)} rows to table {table_id}")
        response = self._make_request(
            "POST",
            f"{self.table_url(table_id)}/rows",
            json={"dataVersion": data_version, "rows": rows}
        )
        payload = self._json(response)

        outcomes = payload.get("rows") if isinstance(payload, dict) else None
        if not isinstance(outcomes, list):
            raise SchemaError(f"Row upload response for {table_id} has no rows list")
        return outcomes

    def reset_table(self, table_id: str, data_version: str) -> int:
        """
        Invalidate server-side table state.

        Returns:
            Number of rows the server reports as deleted
        """
        self.logger.info(f"Resetting table {table_id} at data version {data_version}")
        response = self._make_request(
            "POST",
            f"{self.table_url(table_id)}/reset",
            json={"dataVersion": data_version}
        )
        payload = self._json(response)
        if not isinstance(payload, dict):
            return 0
        return int(payload.get("rowsDeleted") or 0)
