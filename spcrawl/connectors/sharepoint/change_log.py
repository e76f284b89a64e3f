"""Change-log retrieval for a single document library."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from ...models import Container
from .auth import SharePointSession
from .client import SharePointClient, TransportError
from .reconciliation import ChangeSet, ReconciliationEngine


logger = logging.getLogger("spcrawl.sharepoint.change_log")


class ChangeLogRetriever:
    """
    Walks a container's change log by chaining change tokens.

    Each GetChanges batch starts after the token of the previous batch's last
    row; the walk ends on an empty batch. Every row is fed to a
    ReconciliationEngine private to the walk.
    """

    def __init__(self, client: SharePointClient):
        self.client = client

    async def retrieve(
        self,
        session: SharePointSession,
        container: Container,
        last_modified_time: datetime,
        start_token: Optional[str] = None,
    ) -> ChangeSet:
        """
        Collect the reconciled change set of a container.

        Args:
            session: Authenticated session (shared, read-only)
            container: Library handle from SharePointClient.open_container()
            last_modified_time: Events before this boundary are ignored
            start_token: Token to resume after (None = start of retained history)

        Returns:
            ChangeSet for the container. On a transport failure the set
            accumulated so far is returned with is_partial=True.
        """
        engine = ReconciliationEngine(last_modified_time)
        token = start_token
        batches = 0

        while True:
            try:
                rows, last_token = await self.client.query_changes(session, container, token)
            except TransportError as e:
                logger.warning(
                    f"Change log for {container.site_url} stopped after {batches} batch(es): {e}"
                )
                engine.change_set.is_partial = True
                break

            batches += 1
            if not rows:
                break

            for row in rows:
                engine.process_row(row)

            if last_token is None:
                logger.warning(
                    f"Change log batch for {container.site_url} carried no change token - stopping"
                )
                break
            if last_token == token:
                logger.warning(f"Change token did not advance for {container.site_url} - stopping")
                break
            token = last_token

        logger.debug(
            f"Change log for {container.site_url}: {batches} batch(es), "
            f"{engine.processed} applied, {engine.ignored} ignored"
        )
        return engine.change_set
