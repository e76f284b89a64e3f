"""SharePoint REST transport: search queries, change-log queries and downloads."""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, BinaryIO, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from ...config import settings
from ...models import Container

if TYPE_CHECKING:
    from .auth import SharePointSession


logger = logging.getLogger("spcrawl.sharepoint.client")


# Sort order used by every paginated search
DEFAULT_SORT_LIST = "LastModifiedTime:descending"

# SP.ChangeType values reported by GetChanges
CHANGE_TYPE_ADD = 1
CHANGE_TYPE_UPDATE = 2
CHANGE_TYPE_DELETE_OBJECT = 3

# Errors that should trigger a retry with wait
TRANSIENT_ERRORS = (
    "Server disconnected",
    "Connection reset",
    "Connection refused",
    "Timeout",
    "TimeoutException",
    "ConnectError",
    "RemoteProtocolError",
)


class SharePointError(RuntimeError):
    """Base class for SharePoint collaborator failures."""
    pass


class TransportError(SharePointError):
    """A single SharePoint request failed (network or service error)."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


def decode_cells(row: Dict[str, Any]) -> Dict[str, str]:
    """
    Flatten a search result row into a key/value map.

    Rows look like {"Cells": [{"Key": ..., "Value": ...}, ...]}; the verbose
    OData envelope nests the list under {"Cells": {"results": [...]}}.
    Cells missing either field are ignored.
    """
    cells = row.get("Cells") or []
    if isinstance(cells, dict):
        cells = cells.get("results") or []

    doc: Dict[str, str] = {}
    for cell in cells:
        if not isinstance(cell, dict):
            continue
        key = cell.get("Key")
        value = cell.get("Value")
        if key is None or value is None:
            continue
        doc[key] = value
    return doc


def _search_rows(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Extract result rows from a /_api/search/query response body."""
    body = data.get("d", data)
    query = body.get("query", body)
    primary = query.get("PrimaryQueryResult") or {}
    table = (primary.get("RelevantResults") or {}).get("Table") or {}
    rows = table.get("Rows") or []
    if isinstance(rows, dict):
        rows = rows.get("results") or []
    return list(rows)


def _odata_results(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Extract a collection from a verbose ({"d": {"results": []}}) or light OData body."""
    body = data.get("d", data)
    if isinstance(body, dict):
        results = body.get("results", body.get("value"))
        if results is None:
            return []
        return list(results)
    return []


def extract_change_token(row: Dict[str, Any]) -> Optional[str]:
    token = row.get("ChangeToken")
    if isinstance(token, dict):
        return token.get("StringValue")
    return token


def odata_quote(value: str) -> str:
    """Escape a value for use inside a single-quoted OData string literal."""
    return value.replace("'", "''")


class SharePointClient:
    """
    Thin async wrapper around the SharePoint REST API.

    The client owns the HTTP connection pool only. Every operation takes the
    authenticated session explicitly, so one client can serve any number of
    sites (and concurrent site workers) within a run.

    Usage:
        async with SharePointClient() as client:
            rows = await client.search(session, "IsDocument:true", 0, 500)
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout if timeout is not None else settings.sharepoint_timeout
        self.max_retries = max_retries if max_retries is not None else settings.sharepoint_max_retries
        self.retry_delay_seconds = (
            retry_delay_seconds if retry_delay_seconds is not None
            else settings.sharepoint_retry_delay_seconds
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "SharePointClient":
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("SharePointClient is not open - use 'async with SharePointClient()'")
        return self._client

    @staticmethod
    def _headers(session: "SharePointSession") -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {session.access_token}",
            "Accept": "application/json;odata=verbose",
            "Content-Type": "application/json;odata=verbose",
        }

    # -------------------------------------------------------------------------
    # Request execution with retry
    # -------------------------------------------------------------------------

    async def _request(
        self,
        session: "SharePointSession",
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Execute a request, retrying transient failures.

        429 responses honor Retry-After; 5xx and network errors wait
        retry_delay_seconds. Other 4xx responses fail immediately.

        Raises:
            TransportError: When the request cannot be completed
        """
        headers = self._headers(session)
        last_error: Optional[TransportError] = None

        for attempt in range(self.max_retries + 1):
            delay = self.retry_delay_seconds
            try:
                response = await self.http.request(method, url, headers=headers, json=json)
                response.raise_for_status()
                return response

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                last_error = TransportError(f"HTTP {status} for {url}", url=url, status_code=status)
                if status == 429:
                    retry_after = e.response.headers.get("Retry-After")
                    if retry_after and retry_after.isdigit():
                        delay = int(retry_after)
                    logger.warning(f"Rate limited (429) - waiting {delay}s...")
                elif 400 <= status < 500:
                    raise last_error from e

            except (httpx.ConnectError, httpx.ReadTimeout, httpx.WriteTimeout,
                    httpx.ConnectTimeout, httpx.PoolTimeout, httpx.RemoteProtocolError) as e:
                last_error = TransportError(f"Network error for {url}: {e}", url=url)

            except httpx.HTTPError as e:
                error_str = str(e)
                if not any(pattern.lower() in error_str.lower() for pattern in TRANSIENT_ERRORS):
                    raise TransportError(f"Request failed for {url}: {e}", url=url) from e
                last_error = TransportError(f"Transient error for {url}: {e}", url=url)

            if attempt < self.max_retries:
                logger.warning(
                    f"Transient error (attempt {attempt + 1}/{self.max_retries + 1}): {last_error}. "
                    f"Waiting {delay}s before retry..."
                )
                await asyncio.sleep(delay)

        # All retries exhausted
        raise last_error

    async def _json(
        self,
        session: "SharePointSession",
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        response = await self._request(session, method, url, json=json)
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON returned by {url}", url=url) from e

    # -------------------------------------------------------------------------
    # Query operations
    # -------------------------------------------------------------------------

    async def query(self, session: "SharePointSession", url: str) -> Dict[str, Any]:
        """GET an arbitrary REST URL and return the decoded JSON body."""
        return await self._json(session, "GET", url)

    def build_search_url(
        self,
        session: "SharePointSession",
        query_text: str,
        start_row: Optional[int] = None,
        row_limit: Optional[int] = None,
        select_properties: Optional[List[str]] = None,
        sort_list: Optional[str] = DEFAULT_SORT_LIST,
    ) -> str:
        """
        Build a /_api/search/query URL.

        The query text is passed through untouched apart from quoting; it is
        KQL owned by the caller.
        """
        params = [f"querytext={quote(_quote_kql(query_text), safe='')}"]
        if select_properties:
            params.append(f"selectproperties={quote(_quote_kql(','.join(select_properties)), safe='')}")
        if sort_list:
            params.append(f"sortlist={quote(_quote_kql(sort_list), safe='')}")
        if row_limit is not None:
            params.append(f"rowlimit={row_limit}")
        if start_row is not None:
            params.append(f"startrow={start_row}")
        return f"{session.tenant_url.rstrip('/')}/_api/search/query?{'&'.join(params)}"

    async def search(
        self,
        session: "SharePointSession",
        query_text: str,
        start_row: Optional[int] = None,
        row_limit: Optional[int] = None,
        select_properties: Optional[List[str]] = None,
        sort_list: Optional[str] = DEFAULT_SORT_LIST,
    ) -> List[Dict[str, Any]]:
        """Run one page of a search query and return its raw rows."""
        url = self.build_search_url(
            session, query_text, start_row, row_limit, select_properties, sort_list
        )
        data = await self._json(session, "GET", url)
        return _search_rows(data)

    async def open_container(
        self,
        session: "SharePointSession",
        site_url: str,
        title: Optional[str] = None,
    ) -> Container:
        """Resolve the tracked document library of a site."""
        title = title or settings.sharepoint_document_library
        url = (
            f"{site_url.rstrip('/')}/_api/web/lists/getByTitle('{quote(odata_quote(title))}')"
            "?$select=Id,Title"
        )
        data = await self._json(session, "GET", url)
        body = data.get("d", data)
        return Container(
            site_url=site_url,
            list_id=body.get("Id"),
            title=body.get("Title") or title,
        )

    async def query_changes(
        self,
        session: "SharePointSession",
        container: Container,
        token: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        Fetch one batch of the container change log.

        Args:
            session: Authenticated session
            container: Library handle from open_container()
            token: Opaque change token to resume after (None = retained history start)

        Returns:
            Tuple of (raw change rows, token of the last row)
        """
        url = (
            f"{container.site_url.rstrip('/')}/_api/web/lists/"
            f"getByTitle('{quote(odata_quote(container.title))}')/GetChanges"
        )
        change_query: Dict[str, Any] = {
            "__metadata": {"type": "SP.ChangeQuery"},
            "Add": True,
            "Update": True,
            "DeleteObject": True,
            "Item": True,
            "File": True,
        }
        if token is not None:
            change_query["ChangeTokenStart"] = {
                "__metadata": {"type": "SP.ChangeToken"},
                "StringValue": token,
            }

        data = await self._json(session, "POST", url, json={"query": change_query})
        rows = _odata_results(data)
        last_token = extract_change_token(rows[-1]) if rows else None
        return rows, last_token

    async def list_item(
        self,
        session: "SharePointSession",
        site_url: str,
        item_id: Any,
        title: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return the EncodedAbsUrl / FileSystemObjectType of one library item."""
        title = title or settings.sharepoint_document_library
        url = (
            f"{site_url.rstrip('/')}/_api/web/lists/getByTitle('{quote(odata_quote(title))}')/items"
            f"?$select=EncodedAbsUrl,FileSystemObjectType&$filter={quote(f'Id eq {item_id}')}"
        )
        results = _odata_results(await self._json(session, "GET", url))
        return results[0] if results else None

    async def file_by_id(
        self,
        session: "SharePointSession",
        site_url: str,
        unique_id: str,
    ) -> Optional[Dict[str, Any]]:
        """Return file metadata (ServerRelativeUrl, Name, ...) for a unique id."""
        url = f"{site_url.rstrip('/')}/_api/web/GetFileById('{quote(unique_id)}')"
        try:
            data = await self._json(session, "GET", url)
        except TransportError as e:
            if e.status_code == 404:
                return None
            raise
        return data.get("d", data)

    async def download_to(
        self,
        session: "SharePointSession",
        url: str,
        handle: BinaryIO,
    ) -> int:
        """
        Stream a binary response body into an open file handle.

        Returns:
            Number of bytes written
        """
        headers = {"Authorization": f"Bearer {session.access_token}"}
        written = 0
        try:
            async with self.http.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    handle.write(chunk)
                    written += len(chunk)
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"HTTP {e.response.status_code} for {url}", url=url, status_code=e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Download failed for {url}: {e}", url=url) from e
        return written


def _quote_kql(value: str) -> str:
    """Wrap a search parameter in single quotes, doubling embedded quotes."""
    return f"'{odata_quote(value)}'"
