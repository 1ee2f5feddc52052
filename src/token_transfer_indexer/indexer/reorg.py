"""Chain reorganization detection and rollback."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING

from token_transfer_indexer.storage.repos import FrontierDTO, TransferRepository

if TYPE_CHECKING:
    from token_transfer_indexer.chain.client import ChainClient
    from token_transfer_indexer.chain.retry import RetryPolicy
    from token_transfer_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass
class ReorgCheckResult:
    """Outcome of a frontier check."""

    frontier: FrontierDTO | None = None
    rolled_back_from: list[int] = field(default_factory=list)
    deleted: int = 0

    @property
    def reorg_detected(self) -> bool:
        return bool(self.rolled_back_from)


class ReorgDetector:
    """Checks the stored frontier against the chain and truncates diverged suffixes.

    The frontier is the highest stored block. If the chain no longer has that
    block, or reports a different hash for it, every transfer at or above it
    is deleted in its own committed transaction. The check then repeats on
    the new frontier, so after `check_and_rollback()` returns the store's
    highest block is either canonical or the store is empty.
    """

    def __init__(
        self,
        chain_client: ChainClient,
        database: DatabaseManager,
        retry_policy: RetryPolicy,
    ) -> None:
        self._chain = chain_client
        self._db = database
        self._retry = retry_policy

    async def _load_frontier(self) -> FrontierDTO | None:
        async with self._db.get_async_session() as session:
            return await TransferRepository(session).find_highest_block()

    async def check_and_rollback(self) -> ReorgCheckResult:
        """Restore the no-orphaned-frontier invariant.

        Raises:
            TransientRPCError: If the frontier block can't be fetched within
                the retry budget. Nothing is deleted in that case.
        """
        result = ReorgCheckResult()
        while True:
            frontier = await self._load_frontier()
            result.frontier = frontier
            if frontier is None:
                return result

            block = await self._retry.run(partial(self._chain.block_at, frontier.block_number))
            if block is not None and block.hash == frontier.block_hash.lower():
                return result

            logger.warning(
                "Reorg detected at block %d (stored hash %s, chain hash %s), rolling back...",
                frontier.block_number,
                frontier.block_hash,
                block.hash if block is not None else "(missing)",
            )
            async with self._db.get_async_session() as session:
                deleted = await TransferRepository(session).delete_where_block_at_least(frontier.block_number)
            result.rolled_back_from.append(frontier.block_number)
            result.deleted += deleted
            logger.info("Rolled back %d transfers at or above block %d", deleted, frontier.block_number)
