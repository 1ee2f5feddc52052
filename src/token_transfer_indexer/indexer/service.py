"""Indexing cycle orchestrator.

This module provides the IndexerService class that wires the chain
client, retry policy and transfer store into the indexing cycle:

    ReorgDetector → BackwardScanner → RetentionManager

Cycles never overlap: an in-process `asyncio.Lock` serializes them, and
when Redis is configured a Redis lock keeps separate processes from
indexing the same store at the same time. The Redis lock is renewed
after the reorg check and before every scan chunk; a cycle that finds
the lock lost aborts before touching the store again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import LockError, LockNotOwnedError

from token_transfer_indexer.chain.client import ChainClient
from token_transfer_indexer.chain.retry import RetryPolicy
from token_transfer_indexer.config import Settings, get_settings
from token_transfer_indexer.indexer.reorg import ReorgCheckResult, ReorgDetector
from token_transfer_indexer.indexer.retention import RetentionManager
from token_transfer_indexer.indexer.scanner import BackwardScanner, ScanResult
from token_transfer_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

CYCLE_LOCK_KEY = "transfer-indexer:cycle"


async def _no_keepalive() -> None:
    pass


class IndexerState(str, Enum):
    """Indexer lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class IndexerStats:
    """Statistics for the indexer."""

    started_at: datetime | None = None
    cycles_completed: int = 0
    cycles_failed: int = 0
    cycles_skipped: int = 0
    transfers_inserted: int = 0
    transfers_evicted: int = 0
    reorgs_detected: int = 0
    last_cycle_at: datetime | None = None
    last_error: str | None = None


@dataclass
class CycleResult:
    """Outcome of one completed indexing cycle."""

    reorg: ReorgCheckResult
    scan: ScanResult
    evicted: int


class IndexerService:
    """Runs indexing cycles once or on a fixed interval.

    Example:
        ```python
        from token_transfer_indexer.config import get_settings
        from token_transfer_indexer.indexer.service import IndexerService

        async with IndexerService(get_settings()) as service:
            result = await service.run_cycle()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        chain_client: ChainClient | None = None,
        database: DatabaseManager | None = None,
        redis: Redis | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            chain_client: Injected chain client (created from settings otherwise).
            database: Injected database manager (created from settings otherwise).
            redis: Injected Redis client for the cycle lock (created from
                settings when REDIS_URL is set).
            retry_policy: Injected retry policy (created from settings otherwise).
        """
        self._settings = settings or get_settings()
        self._state = IndexerState.STOPPED
        self._stats = IndexerStats()

        # Injected resources are owned by the caller and not closed here.
        self._owns_chain = chain_client is None
        self._owns_database = database is None
        self._owns_redis = redis is None
        self._chain_client = chain_client
        self._db_manager = database
        self._redis = redis
        self._retry_policy = retry_policy

        self._reorg_detector: ReorgDetector | None = None
        self._scanner: BackwardScanner | None = None
        self._retention: RetentionManager | None = None

        self._cycle_lock = asyncio.Lock()
        self._stop_event: asyncio.Event | None = None
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> IndexerState:
        """Current indexer state."""
        return self._state

    @property
    def stats(self) -> IndexerStats:
        """Current indexer statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == IndexerState.RUNNING

    def _initialize_components(self) -> None:
        if self._reorg_detector is not None:
            return
        settings = self._settings
        indexer = settings.indexer

        if self._chain_client is None:
            logger.debug("Initializing chain client...")
            self._chain_client = ChainClient(
                settings.chain.rpc_url,
                max_requests_per_second=settings.chain.max_requests_per_second,
                poa=settings.chain.poa,
            )
        if self._db_manager is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager(settings.database.url)
        if self._redis is None and settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)
        if self._retry_policy is None:
            self._retry_policy = RetryPolicy(
                max_attempts=indexer.retry_max_attempts,
                initial_delay_seconds=indexer.retry_initial_delay_seconds,
                jitter_seconds=indexer.retry_jitter_seconds,
            )

        self._reorg_detector = ReorgDetector(self._chain_client, self._db_manager, self._retry_policy)
        self._scanner = BackwardScanner(
            self._chain_client,
            self._db_manager,
            self._retry_policy,
            contract_address=settings.chain.token_contract,
            chunk_size=indexer.chunk_size_blocks,
            target_count=indexer.max_records,
            confirmations=indexer.confirmations,
            pacing_seconds=indexer.chunk_pacing_seconds,
        )
        self._retention = RetentionManager(self._db_manager, max_records=indexer.max_records)

    async def run_cycle(self) -> CycleResult | None:
        """Run one full indexing cycle.

        Returns:
            The cycle result, or None if another process holds the cycle lock.

        Raises:
            LockNotOwnedError: If the Redis cycle lock expired and could not
                be renewed; the cycle stops before its next store write.
            Exception: Any unrecoverable error from a step; steps already
                committed stay committed.
        """
        self._initialize_components()
        if not (self._reorg_detector and self._scanner and self._retention):
            raise RuntimeError("Indexer components failed to initialize")

        async with self._cycle_lock, self._distributed_lock() as keepalive:
            if keepalive is None:
                logger.info("Another indexer holds the cycle lock; skipping cycle")
                self._stats.cycles_skipped += 1
                return None
            try:
                reorg = await self._reorg_detector.check_and_rollback()
                await keepalive()
                scan = await self._scanner.scan(checkpoint=keepalive)
                await keepalive()
            except LockNotOwnedError:
                logger.warning("Cycle lock expired and was lost mid-cycle; aborting cycle")
                raise
            evicted = await self._retention.enforce()

        self._stats.cycles_completed += 1
        self._stats.transfers_inserted += scan.inserted
        self._stats.transfers_evicted += evicted
        self._stats.reorgs_detected += len(reorg.rolled_back_from)
        self._stats.last_cycle_at = datetime.now(UTC)
        logger.info(
            "Indexing cycle complete: inserted=%d evicted=%d rolled_back=%d chunks=%d safe_head=%s",
            scan.inserted,
            evicted,
            reorg.deleted,
            scan.chunks_scanned,
            scan.safe_head,
        )
        return CycleResult(reorg=reorg, scan=scan, evicted=evicted)

    async def run_cycle_safely(self) -> CycleResult | None:
        """Run one cycle, logging (not raising) any failure."""
        try:
            return await self.run_cycle()
        except Exception as e:
            self._stats.cycles_failed += 1
            self._stats.last_error = str(e)
            logger.error("Indexer cycle failed: %s", e, exc_info=True)
            return None

    @contextlib.asynccontextmanager
    async def _distributed_lock(self) -> AsyncIterator[Callable[[], Awaitable[object]] | None]:
        """Hold the Redis cycle lock for the duration of a cycle.

        Yields a keepalive to await between steps, or None when another
        process holds the lock. The keepalive resets the lock's TTL and
        raises LockNotOwnedError once the lock has expired; without Redis it
        does nothing.
        """
        if self._redis is None:
            yield _no_keepalive
            return
        lock = self._redis.lock(CYCLE_LOCK_KEY, timeout=self._settings.indexer.cycle_lock_ttl_seconds)
        if not await lock.acquire(blocking=False):
            yield None
            return
        try:
            yield lock.reacquire
        finally:
            try:
                await lock.release()
            except LockError as e:
                logger.warning("Failed to release cycle lock (expired?): %s", e)

    async def start(self) -> None:
        """Start the periodic indexing loop in a background task.

        Raises:
            RuntimeError: If the indexer is already running.
        """
        if self._state != IndexerState.STOPPED:
            raise RuntimeError(f"Cannot start indexer in state {self._state}")

        self._state = IndexerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting indexer...")
        try:
            self._initialize_components()
        except Exception as e:
            self._state = IndexerState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start indexer: %s", e)
            await self._cleanup()
            raise

        self._stats.started_at = datetime.now(UTC)
        self._loop_task = asyncio.create_task(self._run_loop())
        self._state = IndexerState.RUNNING
        logger.info("Indexer started with settings: %s", self._settings.redacted_summary())

    def request_stop(self) -> None:
        """Ask a running `run()` to return once the in-flight cycle finishes.

        Safe to call from a signal handler.
        """
        if self._stop_event:
            self._stop_event.set()

    async def stop(self) -> None:
        """Stop the loop after the in-flight cycle and release resources."""
        if self._state == IndexerState.STOPPED:
            return

        self._state = IndexerState.STOPPING
        logger.info("Stopping indexer...")
        if self._stop_event:
            self._stop_event.set()

        if self._loop_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        await self._cleanup()
        self._state = IndexerState.STOPPED
        logger.info("Indexer stopped")

    async def _run_loop(self) -> None:
        if not self._stop_event:
            return
        interval = self._settings.indexer.cycle_interval_seconds
        while not self._stop_event.is_set():
            await self.run_cycle_safely()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass

    async def _cleanup(self) -> None:
        """Clean up owned resources."""
        if self._chain_client and self._owns_chain:
            await self._chain_client.aclose()
            self._chain_client = None
        if self._db_manager and self._owns_database:
            await self._db_manager.dispose_async()
            self._db_manager = None
        if self._redis and self._owns_redis:
            await self._redis.aclose()
            self._redis = None
        self._reorg_detector = None
        self._scanner = None
        self._retention = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the indexer and run until stop() is called or the task is cancelled."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> IndexerService:
        self._initialize_components()
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._state != IndexerState.STOPPED:
            await self.stop()
        else:
            await self._cleanup()
