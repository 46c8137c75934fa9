"""
Search service

Wires the master server client into the batch processor: every page of
addresses is handed to the worker pool while the next page is still being
requested, and every outcome lands in a ResultCollector keyed by address.
"""

import logging
from typing import Optional

from mastersteam.batch.processor import BatchProcessor
from mastersteam.clients.master_querier import MasterServerQuerier
from mastersteam.clients.server_querier import query_server
from mastersteam.models import QueryOutcome, ServerAddress
from mastersteam.protocol.master_query import DirectoryFilter
from mastersteam.utils.fault_policy import get_fault_policy

logger = logging.getLogger(__name__)


class ResultCollector:
    """Outcome sink keyed by server address, in arrival order."""

    def __init__(self):
        self.outcomes = {}

    def __call__(self, outcome: QueryOutcome):
        key = str(outcome.address)
        if key in self.outcomes:
            logger.debug(f"[SEARCH] Duplicate outcome for {key}, keeping the latest")
        self.outcomes[key] = outcome

    def __len__(self):
        return len(self.outcomes)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def errors(self) -> dict:
        return {key: outcome for key, outcome in self.outcomes.items() if not outcome.ok}

    def to_envelope(self) -> dict:
        """JSON envelope: {"data": [{address: record}, ...], "total": n}."""
        return {
            'data': [{key: outcome.to_dict()} for key, outcome in self.outcomes.items()],
            'total': self.total,
        }


class SearchService:
    """
    Runs one master server search plus the per-server queries.

    Attributes:
        config: Configuration object (see mastersteam.config.Config)
        policy: Fault policy handed to both query clients
    """

    def __init__(self, config, policy=None):
        self.config = config
        self.policy = policy or get_fault_policy(config.FAULT_POLICY)

    def create_master_querier(self) -> MasterServerQuerier:
        return MasterServerQuerier(
            master=ServerAddress(self.config.MASTER_HOST, self.config.MASTER_PORT),
            timeout=self.config.MASTER_TIMEOUT,
            max_pages=self.config.MASTER_MAX_PAGES,
            page_delay=self.config.MASTER_PAGE_DELAY,
            policy=self.policy,
        )

    async def query_address(self, address: ServerAddress) -> QueryOutcome:
        """Query one server; the roster is only requested when players > 0."""
        info, players = await query_server(address, self.config.QUERY_TIMEOUT, self.policy)
        logger.info(f"[SEARCH] {address} - {info.name}")
        return QueryOutcome.success(address, info, players)

    async def search(self, directory_filter: DirectoryFilter,
                     collector: Optional[ResultCollector] = None) -> ResultCollector:
        """
        Enumerate the master server and query every address found.

        Raises:
            DirectoryError: The enumeration failed; queued queries are
                abandoned and in-flight ones are allowed to finish
        """
        collector = collector if collector is not None else ResultCollector()
        master = self.create_master_querier()

        async with BatchProcessor(
            self.query_address,
            collector,
            workers=self.config.QUERY_WORKERS,
            queue_size=self.config.QUERY_QUEUE_SIZE,
        ) as processor:
            await master.query(directory_filter, processor.add_batch)
            await processor.finish()

        logger.info(f"[SEARCH] {directory_filter!r}: {collector.total} server(s), {len(collector.errors)} error(s)")
        return collector

    async def search_servers(self, app_id: int, name_pattern: str) -> ResultCollector:
        return await self.search(DirectoryFilter(app_id=app_id, name_match=name_pattern))

    async def lookup_server(self, gameaddr: str) -> ResultCollector:
        return await self.search(DirectoryFilter(gameaddr=gameaddr))
