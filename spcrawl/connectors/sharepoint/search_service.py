"""
Document search over the SharePoint search REST API.

Builds bounded KQL queries (free-text request, last-modified lower bound,
IsDocument), pages through every result with the query cursor and hands one
normalized DocumentRecord per row to the sink.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ...config import settings
from ...models import DocumentRecord
from ...utils.validators import normalize_unique_id
from .auth import SharePointSession
from .client import DEFAULT_SORT_LIST, SharePointClient, decode_cells
from .progress import ProgressCallback, report_progress
from .pagination import QueryCursor


logger = logging.getLogger("spcrawl.sharepoint.search")

BASE_SELECT_PROPERTIES = ["Path", "LastModifiedTime", "SiteName"]
SEARCH_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"

DocumentSink = Callable[[DocumentRecord], Awaitable[None]]


def parse_select_properties(value: Optional[str]) -> List[str]:
    """
    Split a comma-separated property list.

    Examples:
        >>> parse_select_properties(" Author, Title,,Author ")
        ['Author', 'Title']
    """
    if not value:
        return []
    properties: List[str] = []
    for prop in value.split(","):
        prop = prop.strip()
        if prop and prop not in properties:
            properties.append(prop)
    return properties


def derive_relative_path(path: Optional[str]) -> Optional[str]:
    """
    Strip scheme and host from an absolute document URL.

    Examples:
        >>> derive_relative_path("https://t.sharepoint.com/sites/a/Shared Documents/f.docx")
        '/sites/a/Shared Documents/f.docx'
    """
    if not path or "//" not in path:
        return None
    remainder = path.split("//", 1)[1]
    segments = remainder.split("/")[1:]
    return "/" + "/".join(segments)


def build_document_record(cells: Dict[str, Any]) -> DocumentRecord:
    """Normalize a decoded search row into a DocumentRecord."""
    path = cells.get("Path")
    return DocumentRecord(
        path=path,
        relative_path=derive_relative_path(path),
        site_name=cells.get("SiteName"),
        unique_id=normalize_unique_id(cells.get("UniqueId")),
        doc_id=cells.get("DocId"),
        properties={key: str(value) for key, value in cells.items()},
    )


@dataclass
class SearchQuery:
    """
    A bounded document search.

    Attributes:
        request: Caller KQL fragment, combined with the structural predicates
        last_modified_time: Optional lower bound (exclusive) on LastModifiedTime
        select_properties: Extra columns requested on top of the base set
        include_unique_id: Also select UniqueId (lookup and id-based flows)
    """

    request: Optional[str] = None
    last_modified_time: Optional[datetime] = None
    select_properties: List[str] = field(default_factory=list)
    include_unique_id: bool = False
    sort_list: str = DEFAULT_SORT_LIST

    def query_text(self) -> str:
        clauses: List[str] = []
        if self.request and self.request.strip():
            clauses.append(f"({self.request.strip()})")
        if self.last_modified_time is not None:
            clauses.append(f"LastModifiedTime>{self.last_modified_time.strftime(SEARCH_TIME_FORMAT)}")
        clauses.append("IsDocument:true")
        return " AND ".join(clauses)

    def columns(self) -> List[str]:
        columns = list(BASE_SELECT_PROPERTIES)
        if self.include_unique_id:
            columns.append("UniqueId")
        for prop in self.select_properties:
            if prop not in columns:
                columns.append(prop)
        return columns


class DocumentSearchService:
    """Runs SearchQuery objects and streams DocumentRecords to a sink."""

    def __init__(self, client: SharePointClient, page_size: Optional[int] = None):
        self.client = client
        self.page_size = page_size or settings.sharepoint_page_size

    async def search(
        self,
        session: SharePointSession,
        query: SearchQuery,
        sink: DocumentSink,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Emit every document matching the query.

        Returns:
            Number of records emitted
        """
        columns = query.columns()

        async def fetch_page(query_text: str, start_row: int, row_limit: int):
            return await self.client.search(
                session, query_text, start_row, row_limit,
                select_properties=columns, sort_list=query.sort_list,
            )

        count = 0
        skipped = 0
        async for row in QueryCursor(fetch_page, query.query_text(), self.page_size):
            cells = decode_cells(row)
            if not cells.get("Path"):
                skipped += 1
                continue
            await sink(build_document_record(cells))
            count += 1

        if skipped:
            logger.debug(f"Skipped {skipped} search rows without a Path")
        await report_progress(progress, f"Found {count} documents")
        return count

    async def find_one(self, session: SharePointSession, query_text: str) -> Optional[DocumentRecord]:
        """Run a single-row query and normalize its first result."""
        rows = await self.client.search(
            session, query_text, row_limit=1,
            select_properties=BASE_SELECT_PROPERTIES + ["UniqueId", "DocId"], sort_list=None,
        )
        if not rows:
            return None
        cells = decode_cells(rows[0])
        if not cells:
            return None
        return build_document_record(cells)
