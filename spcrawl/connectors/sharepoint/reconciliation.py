"""
Change reconciliation for one container.

Folds an ordered stream of change events into a minimal change set: the
unique ids that must be (re)indexed and the ones that must be deleted.

Rules, applied in processing order:
- Add/Update upserts the id into to_index. An id already in to_delete stays
  there: a delete seen during a run is final for that run.
- Delete upserts the id into to_delete and drops it from to_index.
- Events strictly older than the last-modified-time boundary are ignored;
  events exactly at the boundary are kept.
- Rows without a parseable timestamp or a unique id, and change types other
  than Add/Update/DeleteObject, are ignored.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ...models import ChangeEvent, ChangeKind
from ...utils.validators import normalize_unique_id
from .client import (
    CHANGE_TYPE_ADD,
    CHANGE_TYPE_DELETE_OBJECT,
    CHANGE_TYPE_UPDATE,
    extract_change_token,
)


logger = logging.getLogger("spcrawl.sharepoint.reconciliation")

CHANGE_TIME_FORMATS = ("%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%dT%H:%M:%S.%fZ")

_CHANGE_KINDS = {
    CHANGE_TYPE_ADD: ChangeKind.ADD,
    CHANGE_TYPE_UPDATE: ChangeKind.UPDATE,
    CHANGE_TYPE_DELETE_OBJECT: ChangeKind.DELETE,
    "Add": ChangeKind.ADD,
    "Update": ChangeKind.UPDATE,
    "DeleteObject": ChangeKind.DELETE,
}


def parse_change_time(value: Any) -> Optional[datetime]:
    """Parse a change-log timestamp ("2024-01-31T08:30:00Z"); None when unparseable."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    for fmt in CHANGE_TIME_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def decode_change_event(row: Dict[str, Any]) -> Optional[ChangeEvent]:
    """
    Decode one raw GetChanges row.

    Returns None for malformed rows and for change types the crawl does not
    track (renames, moves, role changes, ...).
    """
    kind = _CHANGE_KINDS.get(row.get("ChangeType"))
    if kind is None:
        return None

    timestamp = parse_change_time(row.get("Time"))
    unique_id = normalize_unique_id(row.get("UniqueId"))
    if timestamp is None or unique_id is None:
        return None

    return ChangeEvent(
        unique_id=unique_id,
        kind=kind,
        token=extract_change_token(row),
        timestamp=timestamp,
    )


@dataclass
class ChangeSet:
    """Reconciled ids for one container, each mapped to its latest change token."""

    to_index: Dict[str, Optional[str]] = field(default_factory=dict)
    to_delete: Dict[str, Optional[str]] = field(default_factory=dict)
    is_partial: bool = False

    def __len__(self) -> int:
        return len(self.to_index) + len(self.to_delete)


class ReconciliationEngine:
    """
    Accumulates change events for one container into a ChangeSet.

    Each engine owns a private ChangeSet; create one engine per container
    crawl.
    """

    def __init__(self, last_modified_time: datetime, change_set: Optional[ChangeSet] = None):
        self.last_modified_time = last_modified_time
        self.change_set = change_set if change_set is not None else ChangeSet()
        self.processed = 0
        self.ignored = 0

    def process(self, event: ChangeEvent) -> bool:
        """
        Apply one change event.

        Returns:
            True if the event changed classification state, False if it was
            ignored for being older than the boundary
        """
        if event.timestamp < self.last_modified_time:
            self.ignored += 1
            return False

        changes = self.change_set
        if event.kind is ChangeKind.DELETE:
            changes.to_delete[event.unique_id] = event.token
            changes.to_index.pop(event.unique_id, None)
        else:
            changes.to_index[event.unique_id] = event.token

        self.processed += 1
        return True

    def process_row(self, row: Dict[str, Any]) -> bool:
        """Decode and apply a raw change row; malformed rows are skipped."""
        event = decode_change_event(row)
        if event is None:
            self.ignored += 1
            return False
        return self.process(event)
