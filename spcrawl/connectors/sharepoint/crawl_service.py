"""
Multi-site change-log crawl for a SharePoint tenant.

Discovers every site collection and web through search, drops personal
(OneDrive) sites, then walks the change log of each site's document library
and emits one change record per reconciled unique id.

Key Features:
- Site discovery through the paginated search cursor
- Per-site failure isolation: a broken site is logged and skipped
- Optional bounded cross-site concurrency sharing one read-only session
- Progress lines through an optional async callback

Usage:
    from spcrawl.connectors.sharepoint.crawl_service import SiteCrawlService

    async with SharePointClient() as client:
        service = SiteCrawlService(client)
        summary = await service.crawl_changes(session, boundary, sink)
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from ...config import settings
from ...models import ChangeOperation, ChangeRecord, CrawlSummary, SiteCrawlResult
from .auth import SharePointSession
from .change_log import ChangeLogRetriever
from .client import SharePointClient, decode_cells
from .pagination import QueryCursor
from .progress import ProgressCallback, report_progress


logger = logging.getLogger("spcrawl.sharepoint.crawl")

SITE_DISCOVERY_QUERY = "contentclass:STS_Site OR contentclass:STS_Web"

ChangeSink = Callable[[ChangeRecord], Awaitable[None]]


def is_personal_site(site_url: str, marker: Optional[str] = None) -> bool:
    """
    Check whether a site URL points at per-user storage.

    Personal sites live at <tenant>/personal/<user>; the segment before the
    last one is the marker.

    Examples:
        >>> is_personal_site("https://t-my.sharepoint.com/personal/bob")
        True
        >>> is_personal_site("https://t.sharepoint.com/sites/a")
        False
    """
    marker = marker or settings.sharepoint_personal_marker
    segments = site_url.rstrip("/").split("/")
    return len(segments) >= 2 and segments[-2] == marker


class SiteCrawlService:
    """
    Orchestrates the change-log crawl across all sites of a tenant.
    """

    def __init__(
        self,
        client: SharePointClient,
        page_size: Optional[int] = None,
        library_title: Optional[str] = None,
        personal_marker: Optional[str] = None,
        max_concurrent_sites: Optional[int] = None,
    ):
        self.client = client
        self.retriever = ChangeLogRetriever(client)
        self.page_size = page_size or settings.sharepoint_page_size
        self.library_title = library_title or settings.sharepoint_document_library
        self.personal_marker = personal_marker or settings.sharepoint_personal_marker
        self.max_concurrent_sites = max(
            1, max_concurrent_sites or settings.sharepoint_max_concurrent_sites
        )

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def discover_sites(self, session: SharePointSession) -> List[str]:
        """
        List site URLs known to search, most recently modified first.

        Rows without a Path are skipped and repeated URLs keep their first
        position. Transport failures propagate: without a site list there is
        nothing to crawl.
        """

        async def fetch_page(query_text: str, start_row: int, row_limit: int):
            return await self.client.search(session, query_text, start_row, row_limit)

        sites: List[str] = []
        seen = set()
        async for row in QueryCursor(fetch_page, SITE_DISCOVERY_QUERY, self.page_size):
            path = decode_cells(row).get("Path")
            if not path or path in seen:
                continue
            seen.add(path)
            sites.append(path)
        return sites

    def exclude_personal_sites(self, sites: List[str]) -> List[str]:
        return [site for site in sites if not is_personal_site(site, self.personal_marker)]

    # -------------------------------------------------------------------------
    # Crawl
    # -------------------------------------------------------------------------

    async def crawl_site(
        self,
        session: SharePointSession,
        site_url: str,
        last_modified_time: datetime,
        sink: ChangeSink,
        progress: Optional[ProgressCallback] = None,
    ) -> SiteCrawlResult:
        """
        Crawl one site's change log and emit its change records.

        Never raises: any failure is logged and recorded on the result.
        """
        result = SiteCrawlResult(site_url=site_url)
        await report_progress(progress, f"Getting logs for site {site_url}")

        try:
            container = await self.client.open_container(session, site_url, self.library_title)
            changes = await self.retriever.retrieve(session, container, last_modified_time)
            result.partial = changes.is_partial
            result.to_index = len(changes.to_index)
            result.to_delete = len(changes.to_delete)

            site_name = site_url.lower()
            for unique_id in changes.to_index:
                await sink(ChangeRecord(
                    operation=ChangeOperation.TO_INDEX, unique_id=unique_id, site_name=site_name
                ))
                result.emitted += 1
            for unique_id in changes.to_delete:
                await sink(ChangeRecord(
                    operation=ChangeOperation.TO_DELETE, unique_id=unique_id, site_name=site_name
                ))
                result.emitted += 1

        except Exception as e:
            result.error = str(e) or type(e).__name__
            logger.error(f"Failed to get logs for site {site_url}: {result.error}")
            await report_progress(progress, f"Failed to get logs for site {site_url}: {result.error}")
            return result

        if result.partial:
            await report_progress(progress, f"Change log for site {site_url} is incomplete")
        await report_progress(progress, f"{result.to_index} documents to index")
        await report_progress(progress, f"{result.to_delete} documents to delete")
        return result

    async def crawl_changes(
        self,
        session: SharePointSession,
        last_modified_time: datetime,
        sink: ChangeSink,
        progress: Optional[ProgressCallback] = None,
    ) -> CrawlSummary:
        """
        Run the full multi-site change crawl.

        Args:
            session: Authenticated session shared by every site
            last_modified_time: Changes before this boundary are ignored
            sink: Async callback receiving each ChangeRecord
            progress: Optional async callback receiving progress lines

        Returns:
            CrawlSummary with one SiteCrawlResult per crawled site
        """
        await report_progress(progress, "Searching for sites...")
        discovered = await self.discover_sites(session)
        sites = self.exclude_personal_sites(discovered)

        summary = CrawlSummary(
            sites_discovered=len(discovered),
            sites_excluded=len(discovered) - len(sites),
        )
        logger.info(
            f"Discovered {len(discovered)} sites ({summary.sites_excluded} personal sites excluded)"
        )

        if self.max_concurrent_sites == 1:
            for site_url in sites:
                summary.results.append(
                    await self.crawl_site(session, site_url, last_modified_time, sink, progress)
                )
        else:
            semaphore = asyncio.Semaphore(self.max_concurrent_sites)

            async def _bounded(site_url: str) -> SiteCrawlResult:
                async with semaphore:
                    return await self.crawl_site(session, site_url, last_modified_time, sink, progress)

            summary.results.extend(await asyncio.gather(*(_bounded(s) for s in sites)))

        if summary.is_partial:
            logger.warning(
                f"Crawl finished with {len(summary.failed_sites)} failed and "
                f"{len(summary.partial_sites)} incomplete site(s) out of {len(summary.results)}"
            )
        return summary
