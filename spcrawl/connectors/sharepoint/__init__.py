"""SharePoint search, change-log crawl and document lookup."""

from .auth import AuthError, SharePointSession, acquire_session
from .change_log import ChangeLogRetriever
from .client import SharePointClient, SharePointError, TransportError, decode_cells
from .crawl_service import SiteCrawlService, is_personal_site
from .lookup_service import DocumentLookupService
from .pagination import QueryCursor
from .reconciliation import ChangeSet, ReconciliationEngine, decode_change_event
from .search_service import (
    DocumentSearchService,
    SearchQuery,
    derive_relative_path,
    parse_select_properties,
)

__all__ = [
    "AuthError",
    "ChangeLogRetriever",
    "ChangeSet",
    "DocumentLookupService",
    "DocumentSearchService",
    "QueryCursor",
    "ReconciliationEngine",
    "SearchQuery",
    "SharePointClient",
    "SharePointError",
    "SharePointSession",
    "SiteCrawlService",
    "TransportError",
    "acquire_session",
    "decode_cells",
    "decode_change_event",
    "derive_relative_path",
    "is_personal_site",
    "parse_select_properties",
]
