"""
Unit tests for SiteCrawlService.

Tests site discovery, personal-site exclusion, per-site failure isolation,
record emission and progress reporting.
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from spcrawl.connectors.sharepoint.client import TransportError
from spcrawl.connectors.sharepoint.crawl_service import (
    SITE_DISCOVERY_QUERY,
    SiteCrawlService,
    is_personal_site,
)
from spcrawl.models import ChangeOperation, Container


def _cells_row(path: Optional[str]) -> Dict:
    cells = [{"Key": "SiteName", "Value": "x"}]
    if path is not None:
        cells.append({"Key": "Path", "Value": path})
    return {"Cells": cells}


def _change(unique_id: str, change_type: int, token: str) -> Dict:
    return {
        "ChangeType": change_type,
        "UniqueId": unique_id,
        "Time": "2024-03-02T10:00:00Z",
        "ChangeToken": {"StringValue": token},
    }


class FakeSharePointClient:
    """In-memory stand-in for SharePointClient."""

    def __init__(self, sites: List[Optional[str]], changes: Dict[str, List[Dict]] = None,
                 broken_sites=(), discovery_error: Exception = None):
        self.sites = sites
        self.changes = changes or {}
        self.broken_sites = set(broken_sites)
        self.discovery_error = discovery_error
        self.search_calls = []
        self.opened = []

    async def search(self, session, query_text, start_row=None, row_limit=None,
                     select_properties=None, sort_list=None):
        self.search_calls.append((query_text, start_row, row_limit))
        if self.discovery_error is not None:
            raise self.discovery_error
        return [_cells_row(p) for p in self.sites[start_row:start_row + row_limit]]

    async def open_container(self, session, site_url, title=None):
        self.opened.append(site_url)
        if site_url in self.broken_sites:
            raise TransportError(f"HTTP 403 for {site_url}", url=site_url, status_code=403)
        return Container(site_url=site_url, list_id="L", title=title or "Documents")

    async def query_changes(self, session, container, token=None):
        if token is not None:
            return [], None
        rows = self.changes.get(container.site_url, [])
        last = rows[-1]["ChangeToken"]["StringValue"] if rows else None
        return rows, last


class RecordingSink:
    def __init__(self):
        self.records = []

    async def __call__(self, record):
        self.records.append(record)


class TestIsPersonalSite:
    """Test personal-site detection."""

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://t-my.sharepoint.com/personal/bob", True),
            ("https://t-my.sharepoint.com/personal/bob/", True),
            ("https://t.sharepoint.com/sites/a", False),
            ("https://t.sharepoint.com/sites/personal", False),
            ("https://t.sharepoint.com", False),
        ],
    )
    def test_marker_is_second_to_last_segment(self, url, expected):
        assert is_personal_site(url) is expected

    def test_custom_marker(self):
        assert is_personal_site("https://t.sharepoint.com/onedrive/bob", marker="onedrive") is True


class TestDiscovery:
    """Test site discovery and exclusion."""

    @pytest.mark.asyncio
    async def test_excludes_personal_sites(self, session):
        client = FakeSharePointClient(["https://t/sites/a", "https://t/personal/bob"])
        service = SiteCrawlService(client, page_size=500)

        sites = service.exclude_personal_sites(await service.discover_sites(session))

        assert sites == ["https://t/sites/a"]

    @pytest.mark.asyncio
    async def test_discovery_pages_and_dedupes(self, session):
        client = FakeSharePointClient(
            ["https://t/sites/a", None, "https://t/sites/b", "https://t/sites/a", "https://t/sites/c"]
        )
        service = SiteCrawlService(client, page_size=2)

        sites = await service.discover_sites(session)

        assert sites == ["https://t/sites/a", "https://t/sites/b", "https://t/sites/c"]
        assert [start for _, start, _ in client.search_calls] == [0, 2, 4, 6]
        assert all(q == SITE_DISCOVERY_QUERY for q, _, _ in client.search_calls)

    @pytest.mark.asyncio
    async def test_discovery_failure_is_fatal(self, session, boundary):
        client = FakeSharePointClient([], discovery_error=TransportError("HTTP 401", status_code=401))
        service = SiteCrawlService(client)

        with pytest.raises(TransportError):
            await service.crawl_changes(session, boundary, RecordingSink())


class TestCrawlChanges:
    """Test the multi-site change crawl."""

    @pytest.fixture
    def client(self):
        return FakeSharePointClient(
            ["https://t/sites/A", "https://t/sites/broken", "https://t/sites/c", "https://t/personal/bob"],
            changes={
                "https://t/sites/A": [_change("U1", 1, "t1"), _change("U2", 1, "t2"), _change("U2", 3, "t3")],
                "https://t/sites/c": [_change("U3", 2, "t4")],
                "https://t/personal/bob": [_change("P1", 1, "t5")],
            },
            broken_sites={"https://t/sites/broken"},
        )

    @pytest.mark.asyncio
    async def test_failing_site_is_isolated(self, session, boundary, client):
        sink = RecordingSink()

        summary = await SiteCrawlService(client).crawl_changes(session, boundary, sink)

        assert summary.sites_discovered == 4
        assert summary.sites_excluded == 1
        assert len(summary.results) == 3
        assert summary.failed_sites == ["https://t/sites/broken"]
        assert summary.is_partial is True
        assert summary.records_emitted == 3
        assert {r.site_name for r in sink.records} == {"https://t/sites/a", "https://t/sites/c"}
        assert "https://t/personal/bob" not in client.opened

    @pytest.mark.asyncio
    async def test_emits_reconciled_records(self, session, boundary, client):
        sink = RecordingSink()

        await SiteCrawlService(client).crawl_changes(session, boundary, sink)

        emitted = {(r.operation, r.unique_id) for r in sink.records}
        assert emitted == {
            (ChangeOperation.TO_INDEX, "U1"),
            (ChangeOperation.TO_DELETE, "U2"),
            (ChangeOperation.TO_INDEX, "U3"),
        }

    @pytest.mark.asyncio
    async def test_site_names_are_lowercased(self, session, boundary, client):
        sink = RecordingSink()

        await SiteCrawlService(client).crawl_changes(session, boundary, sink)

        assert all(r.site_name == r.site_name.lower() for r in sink.records)

    @pytest.mark.asyncio
    async def test_concurrent_crawl_matches_sequential(self, session, boundary, client):
        sequential, concurrent = RecordingSink(), RecordingSink()

        await SiteCrawlService(client).crawl_changes(session, boundary, sequential)
        summary = await SiteCrawlService(client, max_concurrent_sites=3).crawl_changes(
            session, boundary, concurrent
        )

        assert {r.model_dump_json() for r in concurrent.records} == {
            r.model_dump_json() for r in sequential.records
        }
        assert summary.failed_sites == ["https://t/sites/broken"]

    @pytest.mark.asyncio
    async def test_sink_failure_marks_only_that_site(self, session, boundary, client):
        async def sink(record):
            if record.site_name == "https://t/sites/c":
                raise RuntimeError("sink unavailable")

        summary = await SiteCrawlService(client).crawl_changes(session, boundary, sink)

        assert sorted(summary.failed_sites) == ["https://t/sites/broken", "https://t/sites/c"]

    @pytest.mark.asyncio
    async def test_sink_failure_keeps_count_of_records_already_sunk(self, session, boundary, client):
        async def sink(record):
            if record.operation is ChangeOperation.TO_DELETE:
                raise RuntimeError("sink unavailable")

        summary = await SiteCrawlService(client).crawl_changes(session, boundary, sink)

        site_a = next(r for r in summary.results if r.site_url == "https://t/sites/A")
        assert site_a.failed is True
        assert site_a.emitted == 1
        assert summary.records_emitted == 2

    @pytest.mark.asyncio
    async def test_progress_lines(self, session, boundary, client):
        lines = []

        async def progress(message):
            lines.append(message)

        await SiteCrawlService(client).crawl_changes(session, boundary, RecordingSink(), progress)

        assert lines[0] == "Searching for sites..."
        assert "Getting logs for site https://t/sites/A" in lines
        assert "1 documents to index" in lines
        assert "1 documents to delete" in lines
        assert any(line.startswith("Failed to get logs for site https://t/sites/broken") for line in lines)

    @pytest.mark.asyncio
    async def test_failing_progress_callback_is_ignored(self, session, boundary, client):
        async def progress(message):
            raise RuntimeError("display gone")

        summary = await SiteCrawlService(client).crawl_changes(
            session, boundary, RecordingSink(), progress
        )

        assert summary.records_emitted == 3

    @pytest.mark.asyncio
    async def test_partial_change_log_marks_run_partial(self, session, boundary):
        client = FakeSharePointClient(
            ["https://t/sites/a", "https://t/sites/b", "https://t/sites/c"],
            changes={
                "https://t/sites/a": [_change("U1", 1, "t1")],
                "https://t/sites/c": [_change("U3", 1, "t3")],
            },
        )
        healthy_changes = client.query_changes

        async def query_changes(session, container, token=None):
            if container.site_url == "https://t/sites/b":
                raise TransportError("HTTP 503", status_code=503)
            return await healthy_changes(session, container, token)

        client.query_changes = query_changes
        summary = await SiteCrawlService(client).crawl_changes(session, boundary, RecordingSink())

        assert summary.failed_sites == []
        assert summary.partial_sites == ["https://t/sites/b"]
        assert summary.is_partial is True
        assert summary.records_emitted == 2


class TestConcurrencyBound:
    """Test the cross-site concurrency limit."""

    @pytest.mark.asyncio
    async def test_never_exceeds_max_concurrent_sites(self, session, boundary):
        sites = [f"https://t/sites/s{n}" for n in range(6)]
        client = FakeSharePointClient(sites)
        active = 0
        peak = 0

        original = client.open_container

        async def slow_open(session, site_url, title=None):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await original(session, site_url, title)

        client.open_container = slow_open
        summary = await SiteCrawlService(client, max_concurrent_sites=2).crawl_changes(
            session, boundary, RecordingSink()
        )

        assert peak == 2
        assert len(summary.results) == 6
