import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest


# Configure a predictable tenant before importing spcrawl modules.
os.environ.setdefault("SHAREPOINT_COMPANY_URL", "https://contoso.sharepoint.com")
os.environ.setdefault("SHAREPOINT_CLIENT_ID", "test-client-id")
os.environ.setdefault("SHAREPOINT_USERNAME", "crawler@contoso.com")
os.environ.setdefault("SHAREPOINT_PASSWORD", "secret")

# Keep retries instantaneous during tests
os.environ.setdefault("SHAREPOINT_MAX_RETRIES", "2")
os.environ.setdefault("SHAREPOINT_RETRY_DELAY_SECONDS", "0")


from spcrawl.connectors.sharepoint.auth import SharePointSession  # noqa: E402


TENANT_URL = "https://contoso.sharepoint.com"


@pytest.fixture
def session():
    """Authenticated session stand-in."""
    return SharePointSession(tenant_url=TENANT_URL, access_token="test-token")


@pytest.fixture
def boundary():
    """Default last-modified-time boundary."""
    return datetime(2024, 3, 1, 0, 0, 0)


@pytest.fixture
def search_row():
    """Build a raw search row from keyword cells."""

    def _build(**cells: Any) -> Dict[str, Any]:
        return {"Cells": {"results": [{"Key": k, "Value": v, "ValueType": "Edm.String"} for k, v in cells.items()]}}

    return _build


@pytest.fixture
def change_row():
    """Build a raw GetChanges row."""

    def _build(
        unique_id: Optional[str],
        change_type: int = 1,
        token: Optional[str] = None,
        time: Optional[str] = "2024-03-02T10:00:00Z",
    ) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "__metadata": {"type": "SP.ChangeItem"},
            "ChangeType": change_type,
            "ItemId": 1,
        }
        if token is not None:
            row["ChangeToken"] = {"__metadata": {"type": "SP.ChangeToken"}, "StringValue": token}
        if time is not None:
            row["Time"] = time
        if unique_id is not None:
            row["UniqueId"] = unique_id
        return row

    return _build


@pytest.fixture
def search_response():
    """Wrap rows in the verbose /_api/search/query envelope."""

    def _build(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "d": {
                "query": {
                    "PrimaryQueryResult": {
                        "RelevantResults": {
                            "RowCount": len(rows),
                            "Table": {"Rows": {"results": rows}},
                        }
                    }
                }
            }
        }

    return _build
