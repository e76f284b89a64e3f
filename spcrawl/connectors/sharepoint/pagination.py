"""Offset pagination over the SharePoint search endpoint."""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from ...config import settings


logger = logging.getLogger("spcrawl.sharepoint.pagination")

# fetch_page(query_text, start_row, row_limit) -> raw rows
FetchPage = Callable[[str, int, int], Awaitable[List[Dict[str, Any]]]]


class QueryCursor:
    """
    Lazy, finite, non-restartable sequence of search rows across pages.

    Issues fetch_page with start_row 0, page_size, 2 * page_size, ... until a
    page comes back empty. Rows are yielded in the order the service returns
    them. Errors from fetch_page propagate to the caller untouched; the
    cursor neither retries nor recovers partial pages.

    Usage:
        cursor = QueryCursor(fetch_page, "contentclass:STS_Site")
        async for row in cursor:
            ...
    """

    def __init__(self, fetch_page: FetchPage, query_text: str, page_size: Optional[int] = None):
        page_size = page_size if page_size is not None else settings.sharepoint_page_size
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.fetch_page = fetch_page
        self.query_text = query_text
        self.page_size = page_size
        self.pages_fetched = 0
        self.rows_yielded = 0
        self._started = False

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        if self._started:
            raise RuntimeError("QueryCursor cannot be iterated more than once")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Dict[str, Any]]:
        start_row = 0
        while True:
            rows = await self.fetch_page(self.query_text, start_row, self.page_size)
            self.pages_fetched += 1
            if not rows:
                logger.debug(
                    f"Query exhausted after {self.pages_fetched} page(s), {self.rows_yielded} row(s)"
                )
                return
            for row in rows:
                self.rows_yielded += 1
                yield row
            start_row += self.page_size
