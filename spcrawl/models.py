# ============================================================================
# spcrawl - Pydantic Data Models
# ============================================================================
"""
Pydantic data models for the spcrawl crawl and search engine.

This module defines the records that flow between the crawl components and
out to the downstream sink:
- Change events decoded from a container's change log
- Normalized document records built from search result rows
- Change records emitted per reconciled unique id
- Per-site and per-run crawl summaries

Architecture:
- Uses Pydantic BaseModel for every record handed to a sink
- Change events are frozen once produced
- Raw search cells are kept verbatim in `properties` for passthrough
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# ENUMERATION TYPES
# ============================================================================

class ChangeKind(str, Enum):
    """
    Change types tracked by the change-log crawl.

    Values:
        ADD: Object created in the container
        UPDATE: Object content or metadata modified
        DELETE: Object removed (SharePoint "DeleteObject")
    """
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class ChangeOperation(str, Enum):
    """Operation carried by an emitted change record."""
    TO_INDEX = "to_index"
    TO_DELETE = "to_delete"


# ============================================================================
# CHANGE LOG MODELS
# ============================================================================

class ChangeEvent(BaseModel):
    """One decoded row of a container change log."""
    model_config = ConfigDict(frozen=True)

    unique_id: str = Field(..., description="Object unique id (brace-stripped)")
    kind: ChangeKind
    token: Optional[str] = Field(default=None, description="Opaque change token of the row")
    timestamp: datetime


class Container(BaseModel):
    """Handle on the document library tracked for one site."""
    site_url: str
    list_id: Optional[str] = None
    title: str = "Documents"


class ChangeRecord(BaseModel):
    """Record handed to the sink for every reconciled unique id."""
    operation: ChangeOperation
    unique_id: str
    site_name: str


# ============================================================================
# SEARCH MODELS
# ============================================================================

class DocumentRecord(BaseModel):
    """Normalized search result row."""
    path: Optional[str] = None
    relative_path: Optional[str] = None
    site_name: Optional[str] = None
    unique_id: Optional[str] = None
    doc_id: Optional[str] = None
    properties: Dict[str, str] = Field(default_factory=dict)


# ============================================================================
# CRAWL SUMMARIES
# ============================================================================

class SiteCrawlResult(BaseModel):
    """Outcome of the change-log crawl for a single site."""
    site_url: str
    to_index: int = 0
    to_delete: int = 0
    emitted: int = Field(default=0, description="Change records handed to the sink")
    partial: bool = Field(default=False, description="Change log stopped early on a transport failure")
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class CrawlSummary(BaseModel):
    """Outcome of a full multi-site crawl run."""
    sites_discovered: int = 0
    sites_excluded: int = 0
    results: List[SiteCrawlResult] = Field(default_factory=list)

    @property
    def failed_sites(self) -> List[str]:
        return [r.site_url for r in self.results if r.failed]

    @property
    def partial_sites(self) -> List[str]:
        return [r.site_url for r in self.results if r.partial]

    @property
    def records_emitted(self) -> int:
        return sum(r.emitted for r in self.results)

    @property
    def is_partial(self) -> bool:
        """True when any site failed or stopped before the end of its change log."""
        return bool(self.failed_sites or self.partial_sites)
