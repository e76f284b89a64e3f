"""Progress reporting shared by the crawl, search and download flows."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional


logger = logging.getLogger("spcrawl.sharepoint.progress")

ProgressCallback = Callable[[str], Awaitable[None]]


async def report_progress(progress: Optional[ProgressCallback], message: str) -> None:
    """
    Log a progress line and forward it to the caller's callback.

    Progress is observational only: a failing callback never stops a crawl.
    """
    logger.info(message)
    if progress:
        try:
            await progress(message)
        except Exception as e:
            logger.debug(f"Progress callback failed: {e}")
