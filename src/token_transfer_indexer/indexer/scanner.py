"""Backward chunked log scanning from the confirmed head.

The scanner walks block windows of `chunk_size` blocks downward from
``head - confirmations`` towards the stored frontier, decoding Transfer
logs and inserting them chunk by chunk, until the per-cycle quota of new
transfers is met or the frontier is reached.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any

from token_transfer_indexer.chain.events import TRANSFER_EVENT_TOPIC, LogDecodeError, decode_transfer_log
from token_transfer_indexer.storage.repos import TransferDTO, TransferRepository

if TYPE_CHECKING:
    from token_transfer_indexer.chain.client import BlockInfo, ChainClient
    from token_transfer_indexer.chain.retry import RetryPolicy
    from token_transfer_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Counters for one backward scan."""

    last_indexed_block: int
    safe_head: int | None = None
    chunks_scanned: int = 0
    logs_fetched: int = 0
    logs_dropped: int = 0
    inserted: int = 0
    lowest_block_scanned: int | None = None


def next_window(to_block: int, *, last_indexed_block: int, chunk_size: int) -> tuple[int, int]:
    """Return the ``(from_block, to_block)`` window ending at ``to_block``.

    The window never reaches below ``last_indexed_block + 1``; an empty
    window is signalled by ``from_block > to_block``.
    """
    return max(last_indexed_block + 1, to_block - chunk_size + 1), to_block


class BackwardScanner:
    """Fetches new Transfer logs between the stored frontier and the safe head."""

    def __init__(
        self,
        chain_client: ChainClient,
        database: DatabaseManager,
        retry_policy: RetryPolicy,
        *,
        contract_address: str,
        chunk_size: int,
        target_count: int,
        confirmations: int,
        pacing_seconds: float = 0.0,
        event_topic: str = TRANSFER_EVENT_TOPIC,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Initialize the scanner.

        Args:
            chain_client: RPC client (calls are wrapped by ``retry_policy``).
            database: Database manager owning the transfer store.
            retry_policy: Backoff policy for every RPC call.
            contract_address: Token contract to filter logs by.
            chunk_size: Blocks per ``eth_getLogs`` window.
            target_count: Stop once this many new transfers were inserted.
            confirmations: Blocks below head considered final.
            pacing_seconds: Fixed delay between consecutive chunk fetches.
            event_topic: topic0 of the indexed event.
            sleep: Awaitable sleep function (injectable for tests).
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if target_count < 1:
            raise ValueError("target_count must be >= 1")
        if confirmations < 0:
            raise ValueError("confirmations must be >= 0")
        self._chain = chain_client
        self._db = database
        self._retry = retry_policy
        self._contract_address = contract_address
        self._chunk_size = chunk_size
        self._target_count = target_count
        self._confirmations = confirmations
        self._pacing_seconds = pacing_seconds
        self._event_topic = event_topic
        self._sleep = sleep

    async def _last_indexed_block(self) -> int:
        async with self._db.get_async_session() as session:
            frontier = await TransferRepository(session).find_highest_block()
        return frontier.block_number if frontier else 0

    async def scan(self, *, checkpoint: Callable[[], Awaitable[object]] | None = None) -> ScanResult:
        """Run one backward scan.

        Args:
            checkpoint: Awaited before every chunk fetch. Whatever it raises
                ends the scan; chunks already inserted stay committed.

        Raises:
            TransientRPCError: If a head or log fetch exhausts its retry
                budget. Chunks inserted before the failure stay committed.
        """
        last_indexed = await self._last_indexed_block()
        result = ScanResult(last_indexed_block=last_indexed)

        head = await self._retry.run(self._chain.head_height)
        safe_head = head - self._confirmations
        result.safe_head = safe_head
        if safe_head < last_indexed:
            logger.debug(
                "Safe head %d is below last indexed block %d; nothing to scan",
                safe_head,
                last_indexed,
            )
            return result

        from_block, to_block = next_window(
            safe_head, last_indexed_block=last_indexed, chunk_size=self._chunk_size
        )
        while result.inserted < self._target_count and from_block <= to_block:
            if result.chunks_scanned and self._pacing_seconds > 0:
                await self._sleep(self._pacing_seconds)
            if checkpoint is not None:
                await checkpoint()

            logger.info("Fetching logs from block %d to %d", from_block, to_block)
            logs = await self._retry.run(
                partial(
                    self._chain.logs_in_range,
                    self._contract_address,
                    self._event_topic,
                    from_block,
                    to_block,
                )
            )
            transfers, dropped = await self._build_chunk(logs)
            inserted = await self._store_chunk(transfers)

            logger.info(
                "Inserted %d transfers for blocks %d-%d (%d logs, %d dropped, %d duplicates)",
                inserted,
                from_block,
                to_block,
                len(logs),
                dropped,
                len(transfers) - inserted,
            )
            result.chunks_scanned += 1
            result.logs_fetched += len(logs)
            result.logs_dropped += dropped
            result.inserted += inserted
            result.lowest_block_scanned = from_block

            from_block, to_block = next_window(
                from_block - 1, last_indexed_block=last_indexed, chunk_size=self._chunk_size
            )

        return result

    async def _build_chunk(self, logs: list[dict[str, Any]]) -> tuple[list[TransferDTO], int]:
        """Decode a chunk's logs and attach block metadata.

        Logs that fail to decode, or whose block can't be resolved, are
        dropped individually. Returns the surviving transfers and the
        number dropped.
        """
        decoded = []
        dropped = 0
        for log in logs:
            try:
                decoded.append(decode_transfer_log(log))
            except LogDecodeError as e:
                dropped += 1
                logger.debug("Skipping undecodable log %s: %s", log.get("transactionHash"), e)

        blocks = await self._resolve_blocks({d.block_number for d in decoded})

        transfers: list[TransferDTO] = []
        for d in decoded:
            block = blocks.get(d.block_number)
            if block is None:
                dropped += 1
                continue
            if d.block_hash is not None and d.block_hash != block.hash:
                dropped += 1
                logger.debug(
                    "Skipping log %s:%d, block %d hash changed during scan",
                    d.tx_hash,
                    d.log_index,
                    d.block_number,
                )
                continue
            transfers.append(
                TransferDTO(
                    tx_hash=d.tx_hash,
                    log_index=d.log_index,
                    block_number=d.block_number,
                    block_hash=block.hash,
                    from_address=d.from_address,
                    to_address=d.to_address,
                    amount=d.amount,
                    timestamp=block.timestamp,
                )
            )
        return transfers, dropped

    async def _resolve_blocks(self, block_numbers: set[int]) -> dict[int, BlockInfo]:
        """Fetch block metadata once per block number, concurrently."""
        numbers = sorted(block_numbers)
        lookups = await asyncio.gather(
            *(self._retry.run(partial(self._chain.block_at, n)) for n in numbers),
            return_exceptions=True,
        )
        blocks: dict[int, BlockInfo] = {}
        for number, lookup in zip(numbers, lookups, strict=True):
            if isinstance(lookup, BaseException):
                if not isinstance(lookup, Exception):
                    raise lookup
                logger.debug("Block %d lookup failed, dropping its logs: %s", number, lookup)
            elif lookup is None:
                logger.debug("Block %d not found, dropping its logs", number)
            else:
                blocks[number] = lookup
        return blocks

    async def _store_chunk(self, transfers: list[TransferDTO]) -> int:
        if not transfers:
            return 0
        async with self._db.get_async_session() as session:
            return await TransferRepository(session).insert_many_ignoring_duplicates(transfers)
