"""Single-document lookup and binary download for one site."""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, urlsplit

from ...config import settings
from ...models import DocumentRecord
from ...utils.validators import normalize_unique_id
from .auth import SharePointSession
from .client import SharePointClient, odata_quote
from .progress import ProgressCallback, report_progress
from .search_service import DocumentSearchService


logger = logging.getLogger("spcrawl.sharepoint.lookup")

# SP.FileSystemObjectType
FILE_SYSTEM_OBJECT_FILE = 0

DOWNLOAD_PREFIX = "spcrawl_"


def _path_query(url: str) -> str:
    return f'Path:"{url}"'


class DocumentLookupService:
    """
    Resolves documents by item id or unique id, and downloads file content.
    """

    def __init__(self, client: SharePointClient, library_title: Optional[str] = None):
        self.client = client
        self.library_title = library_title or settings.sharepoint_document_library
        self.search = DocumentSearchService(client)

    async def get_by_item_id(
        self,
        session: SharePointSession,
        site_url: str,
        item_id: Any,
        docs_only: bool = False,
    ) -> Optional[DocumentRecord]:
        """
        Resolve a library item id to its search record.

        Args:
            session: Authenticated session
            site_url: Site hosting the library
            item_id: Integer list item id
            docs_only: Return None for items that are not files (folders)

        Returns:
            DocumentRecord, or None when the item or its search entry is missing
        """
        item = await self.client.list_item(session, site_url, item_id, self.library_title)
        if not item:
            logger.debug(f"No item {item_id} in {site_url}")
            return None

        if docs_only and item.get("FileSystemObjectType") != FILE_SYSTEM_OBJECT_FILE:
            logger.debug(f"Item {item_id} in {site_url} is not a document - skipped")
            return None

        path = item.get("EncodedAbsUrl")
        if not path:
            return None
        return await self.search.find_one(session, _path_query(path))

    async def get_by_unique_id(
        self,
        session: SharePointSession,
        site_url: str,
        unique_id: str,
    ) -> Optional[DocumentRecord]:
        """Resolve a file unique id (braces optional) to its search record."""
        unique_id = normalize_unique_id(unique_id)
        if not unique_id:
            return None

        file_info = await self.client.file_by_id(session, site_url, unique_id)
        if not file_info or not file_info.get("ServerRelativeUrl"):
            logger.debug(f"No file {unique_id} in {site_url}")
            return None

        parts = urlsplit(site_url)
        absolute_url = f"{parts.scheme}://{parts.netloc}{file_info['ServerRelativeUrl']}"
        return await self.search.find_one(session, _path_query(absolute_url))

    async def download(
        self,
        session: SharePointSession,
        site_url: str,
        relative_path: str,
        target_dir: Optional[Path] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """
        Download a file into a new temporary file.

        Args:
            session: Authenticated session
            site_url: Site hosting the file
            relative_path: Server-relative path (e.g. /sites/a/Shared Documents/f.docx)
            target_dir: Directory for the temporary file (settings.download_dir or system temp)
            progress: Optional async progress callback

        Returns:
            Path of the written file; the caller owns it
        """
        target_dir = target_dir or settings.download_path
        if target_dir is not None:
            Path(target_dir).mkdir(parents=True, exist_ok=True)

        url = (
            f"{site_url.rstrip('/')}/_api/web/GetFileByServerRelativeUrl"
            f"('{quote(odata_quote(relative_path))}')/$value"
        )
        await report_progress(progress, f">>> Downloading file {relative_path}")

        fd, name = tempfile.mkstemp(prefix=DOWNLOAD_PREFIX, dir=target_dir)
        try:
            with os.fdopen(fd, "wb") as handle:
                written = await self.client.download_to(session, url, handle)
        except BaseException:
            Path(name).unlink(missing_ok=True)
            raise

        logger.debug(f"Downloaded {written} bytes from {relative_path} to {name}")
        return Path(name)
