"""Chain node client for the indexing engine.

This module provides a thin async client over a JSON-RPC node with:
- Head height, block metadata and filtered log retrieval
- Rate limiting to respect provider limits
- Translation of transport failures into `TransientRPCError`

Retries are deliberately not handled here; callers wrap calls with
`token_transfer_indexer.chain.retry.RetryPolicy`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from aiohttp import ClientError, ClientTimeout
from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_REQUEST_TIMEOUT = 30

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (Web3Exception, ClientError, TimeoutError, ConnectionError)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class TransientRPCError(ChainClientError):
    """Raised when an RPC call fails for a retryable reason (network, timeout, rate limit)."""


@dataclass(frozen=True)
class BlockInfo:
    """Block metadata needed to index and reorg-check a transfer."""

    number: int
    hash: str
    timestamp: datetime


def to_hex(value: Any) -> str:
    """Normalize HexBytes/bytes/str values to a lowercase 0x-prefixed string."""
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return "0x" + HexBytes(value).hex().removeprefix("0x")


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """Async JSON-RPC client exposing the calls the indexer needs.

    Example:
        ```python
        client = ChainClient("https://eth.llamarpc.com")
        head = await client.head_height()
        block = await client.block_at(head - 12)
        logs = await client.logs_in_range(usdc, TRANSFER_EVENT_TOPIC, head - 20, head - 12)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        request_timeout: int = DEFAULT_REQUEST_TIMEOUT,
        poa: bool = False,
        web3: AsyncWeb3[AsyncHTTPProvider] | None = None,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: JSON-RPC endpoint URL.
            max_requests_per_second: Client-side rate limit for RPC calls.
            request_timeout: HTTP request timeout in seconds.
            poa: Inject the proof-of-authority extraData middleware.
            web3: Pre-built AsyncWeb3 instance (tests and custom providers).
        """
        self._rpc_url = rpc_url
        self._w3 = web3 or self._new_web3_client(rpc_url, request_timeout=request_timeout, poa=poa)
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

    def _new_web3_client(self, rpc_url: str, *, request_timeout: int, poa: bool) -> AsyncWeb3[AsyncHTTPProvider]:
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": ClientTimeout(total=request_timeout)},
        )
        client = AsyncWeb3(provider)
        if poa:
            try:
                client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            except Exception as e:
                logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def head_height(self) -> int:
        """Return the latest block number reported by the node."""
        await self._rate_limiter.acquire()
        try:
            return int(await self._w3.eth.block_number)
        except _TRANSIENT_ERRORS as e:
            raise TransientRPCError(f"eth_blockNumber failed: {e}") from e

    async def block_at(self, number: int) -> BlockInfo | None:
        """Return hash/timestamp of block ``number``, or None if the node doesn't have it."""
        if number < 0:
            raise ValueError("block number must be >= 0")
        await self._rate_limiter.acquire()
        try:
            block = await self._w3.eth.get_block(number)
        except BlockNotFound:
            return None
        except _TRANSIENT_ERRORS as e:
            raise TransientRPCError(f"eth_getBlockByNumber({number}) failed: {e}") from e
        if block is None or block.get("hash") is None:
            return None
        return BlockInfo(
            number=int(block["number"]),
            hash=to_hex(block["hash"]),
            timestamp=datetime.fromtimestamp(int(block["timestamp"]), tz=UTC),
        )

    async def logs_in_range(
        self,
        contract_address: str,
        event_topic: str,
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        """Fetch raw logs for ``contract_address`` with ``event_topic`` in ``[from_block, to_block]``."""
        if from_block > to_block:
            raise ValueError("from_block must be <= to_block")
        await self._rate_limiter.acquire()
        filter_params = {
            "address": AsyncWeb3.to_checksum_address(contract_address),
            "topics": [event_topic],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        try:
            logs = await self._w3.eth.get_logs(filter_params)
        except _TRANSIENT_ERRORS as e:
            raise TransientRPCError(f"eth_getLogs({from_block}-{to_block}) failed: {e}") from e
        return [dict(log) for log in logs]

    async def health_check(self) -> bool:
        """Check if the client can reach the node."""
        try:
            await self.head_height()
            return True
        except ChainClientError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)
