#!/usr/bin/env python3
"""
SharePoint crawl command line.

Runs one crawl flow against the configured tenant and writes every emitted
record to stdout as a JSON line. Progress and errors go to the log (stderr).

Usage:
    # Change-log crawl across every site since a boundary
    spcrawl changes --last-modified-time "2024-01-31 08:30:00"

    # Time-bounded / free-text document search
    spcrawl search --last-modified-time "2024-01-31 08:30:00" --select "Author,Title"
    spcrawl search --request "FileExtension:docx" --unique-id

    # Resolve a single document
    spcrawl lookup --site https://t.sharepoint.com/sites/a --item-id 42 --docs-only
    spcrawl lookup --site https://t.sharepoint.com/sites/a --unique-id "{...}"

    # Download a file to a temporary location
    spcrawl download --site https://t.sharepoint.com/sites/a --relative-path "/sites/a/Shared Documents/f.docx"

Exit codes:
    0  success
    1  fatal error (invalid argument, authentication, site discovery)
    2  partial success (one or more sites failed or stopped early)
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

from ..config import settings
from ..connectors.sharepoint.auth import AuthError, SharePointSession, acquire_session
from ..connectors.sharepoint.client import SharePointClient, SharePointError
from ..connectors.sharepoint.crawl_service import SiteCrawlService
from ..connectors.sharepoint.lookup_service import DocumentLookupService
from ..connectors.sharepoint.search_service import (
    DocumentSearchService,
    SearchQuery,
    parse_select_properties,
)
from ..utils.validators import ArgumentValidationError, validate_last_modified_time


logger = logging.getLogger("spcrawl.commands.crawl")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2


async def _write_record(record: BaseModel) -> None:
    sys.stdout.write(record.model_dump_json() + "\n")
    sys.stdout.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spcrawl",
        description="Incremental SharePoint crawl: change logs, document search and lookup.",
    )
    parser.add_argument("--company-url", help="Tenant root URL (default: SHAREPOINT_COMPANY_URL).")
    parser.add_argument("--username", help="Account name (default: SHAREPOINT_USERNAME).")
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO).")

    subparsers = parser.add_subparsers(dest="command", required=True)

    changes = subparsers.add_parser("changes", help="Crawl change logs of every site.")
    changes.add_argument(
        "--last-modified-time", required=True,
        help="Ignore changes before this time (YYYY-MM-DD HH:MM:SS).",
    )
    changes.add_argument(
        "--max-concurrent-sites", type=int, default=None,
        help="Sites crawled in parallel (default: SHAREPOINT_MAX_CONCURRENT_SITES).",
    )

    search = subparsers.add_parser("search", help="Search documents.")
    search.add_argument("--request", help="KQL fragment combined with the document predicates.")
    search.add_argument(
        "--last-modified-time",
        help="Only documents modified after this time (YYYY-MM-DD HH:MM:SS).",
    )
    search.add_argument("--select", default="", help="Extra properties to return (comma separated).")
    search.add_argument("--unique-id", action="store_true", help="Also return UniqueId.")

    lookup = subparsers.add_parser("lookup", help="Resolve a single document.")
    lookup.add_argument("--site", required=True, help="Site URL hosting the document library.")
    target = lookup.add_mutually_exclusive_group(required=True)
    target.add_argument("--item-id", type=int, help="List item id in the document library.")
    target.add_argument("--unique-id", help="File unique id.")
    lookup.add_argument("--docs-only", action="store_true", help="Ignore items that are not files.")

    download = subparsers.add_parser("download", help="Download a file to a temporary location.")
    download.add_argument("--site", required=True, help="Site URL hosting the file.")
    download.add_argument("--relative-path", required=True, help="Server-relative path of the file.")
    download.add_argument("--target-dir", help="Directory for the downloaded file.")

    return parser


async def run_changes(
    session: SharePointSession, args: argparse.Namespace, boundary: datetime
) -> int:
    async with SharePointClient() as client:
        service = SiteCrawlService(client, max_concurrent_sites=args.max_concurrent_sites)
        summary = await service.crawl_changes(session, boundary, _write_record)

    logger.info(
        f"Crawled {len(summary.results)} sites, {summary.records_emitted} records emitted, "
        f"{len(summary.failed_sites)} failed, {len(summary.partial_sites)} incomplete"
    )
    return EXIT_PARTIAL if summary.is_partial else EXIT_OK


async def run_search(
    session: SharePointSession, args: argparse.Namespace, boundary: Optional[datetime]
) -> int:
    query = SearchQuery(
        request=args.request,
        last_modified_time=boundary,
        select_properties=parse_select_properties(args.select),
        include_unique_id=args.unique_id,
    )
    async with SharePointClient() as client:
        await DocumentSearchService(client).search(session, query, _write_record)
    return EXIT_OK


async def run_lookup(session: SharePointSession, args: argparse.Namespace) -> int:
    async with SharePointClient() as client:
        service = DocumentLookupService(client)
        if args.item_id is not None:
            record = await service.get_by_item_id(session, args.site, args.item_id, args.docs_only)
        else:
            record = await service.get_by_unique_id(session, args.site, args.unique_id)

    if record is None:
        logger.warning("No matching document found")
        return EXIT_FATAL
    await _write_record(record)
    return EXIT_OK


async def run_download(session: SharePointSession, args: argparse.Namespace) -> int:
    target_dir = Path(args.target_dir) if args.target_dir else None
    async with SharePointClient() as client:
        path = await DocumentLookupService(client).download(
            session, args.site, args.relative_path, target_dir
        )
    sys.stdout.write(f"{path}\n")
    return EXIT_OK


async def run(args: argparse.Namespace) -> int:
    # Validate execution arguments before any remote call
    boundary = None
    if getattr(args, "last_modified_time", None) is not None or args.command == "changes":
        boundary = validate_last_modified_time(args.last_modified_time)
    if args.command == "search" and not (args.request or boundary):
        raise ArgumentValidationError("search requires --request and/or --last-modified-time")

    session = await acquire_session(
        args.company_url or settings.sharepoint_company_url,
        username=args.username,
    )

    if args.command == "changes":
        return await run_changes(session, args, boundary)
    if args.command == "search":
        return await run_search(session, args, boundary)
    if args.command == "lookup":
        return await run_lookup(session, args)
    return await run_download(session, args)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        return asyncio.run(run(args))
    except ArgumentValidationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    except AuthError as exc:
        print(f"Authentication failed: {exc}", file=sys.stderr)
        return EXIT_FATAL
    except SharePointError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    raise SystemExit(main())
