"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from token_transfer_indexer.chain.client import BlockInfo, TransientRPCError
from token_transfer_indexer.chain.events import TRANSFER_EVENT_TOPIC
from token_transfer_indexer.chain.retry import RetryPolicy
from token_transfer_indexer.config import DatabaseSettings, IndexerSettings, Settings
from token_transfer_indexer.storage.database import DatabaseManager
from token_transfer_indexer.storage.repos import TransferDTO

USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
CAROL = "0x3333333333333333333333333333333333333333"

GENESIS_TIME = datetime(2026, 1, 1, tzinfo=UTC)


def block_hash(number: int, fork: int = 0) -> str:
    """Deterministic 32-byte block hash; a different ``fork`` gives a different chain."""
    return "0x" + f"{fork:02x}{number:062x}"


def tx_hash(block_number: int, index: int) -> str:
    return "0x" + f"{block_number:032x}{index:032x}"


def address_topic(address: str) -> str:
    return "0x" + "00" * 12 + address.removeprefix("0x").lower()


def make_log(
    block_number: int,
    log_index: int = 0,
    *,
    sender: str = ALICE,
    recipient: str = BOB,
    amount: int = 1_000_000,
    fork: int = 0,
    tx: str | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC style Transfer log."""
    return {
        "address": USDC,
        "topics": [TRANSFER_EVENT_TOPIC, address_topic(sender), address_topic(recipient)],
        "data": "0x" + amount.to_bytes(32, "big").hex(),
        "blockNumber": block_number,
        "blockHash": block_hash(block_number, fork),
        "transactionHash": tx or tx_hash(block_number, log_index),
        "logIndex": log_index,
    }


def make_transfer(
    block_number: int,
    log_index: int = 0,
    *,
    sender: str = ALICE,
    recipient: str = BOB,
    amount: int = 1_000_000,
    fork: int = 0,
) -> TransferDTO:
    return TransferDTO(
        tx_hash=tx_hash(block_number, log_index),
        log_index=log_index,
        block_number=block_number,
        block_hash=block_hash(block_number, fork),
        from_address=sender,
        to_address=recipient,
        amount=str(amount),
        timestamp=GENESIS_TIME + timedelta(seconds=12 * block_number),
    )


class FakeChainClient:
    """In-memory chain with a canonical block hash per height and a log list.

    ``forks`` maps block numbers to the fork id currently canonical at that
    height; blocks above ``head`` or listed in ``missing_blocks`` are unknown.
    """

    def __init__(self, head: int, logs: list[dict[str, Any]] | None = None) -> None:
        self.head = head
        self.logs = list(logs or [])
        self.forks: dict[int, int] = {}
        self.missing_blocks: set[int] = set()
        self.failing_blocks: set[int] = set()
        self.failing_ranges: set[tuple[int, int]] = set()
        self.head_failures = 0
        self.log_failures = 0
        self.log_calls: list[tuple[int, int]] = []
        self.block_calls: list[int] = []
        self.closed = False

    async def head_height(self) -> int:
        if self.head_failures:
            self.head_failures -= 1
            raise TransientRPCError("eth_blockNumber failed: connection reset")
        return self.head

    async def block_at(self, number: int) -> BlockInfo | None:
        self.block_calls.append(number)
        if number in self.failing_blocks:
            raise TransientRPCError(f"eth_getBlockByNumber({number}) failed: 502")
        if number > self.head or number in self.missing_blocks:
            return None
        return BlockInfo(
            number=number,
            hash=block_hash(number, self.forks.get(number, 0)),
            timestamp=GENESIS_TIME + timedelta(seconds=12 * number),
        )

    async def logs_in_range(
        self,
        contract_address: str,
        event_topic: str,
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        self.log_calls.append((from_block, to_block))
        if self.log_failures:
            self.log_failures -= 1
            raise TransientRPCError("eth_getLogs failed: connection reset")
        if (from_block, to_block) in self.failing_ranges:
            raise TransientRPCError(f"eth_getLogs({from_block}-{to_block}) failed: 429")
        return [log for log in self.logs if from_block <= log["blockNumber"] <= to_block]

    async def aclose(self) -> None:
        self.closed = True


class RecordingSleep:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry_policy(sleep: RecordingSleep) -> RetryPolicy:
    """Fast retry policy: three attempts, no jitter, sleeps recorded."""
    return RetryPolicy(max_attempts=3, initial_delay_seconds=0.01, jitter_seconds=0.0, sleep=sleep)


@pytest.fixture
async def database(tmp_path: Path):
    """File-backed SQLite store with the schema created."""
    db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'transfers.db'}")
    await db.init_schema_async()
    yield db
    await db.dispose_async()


def make_settings(database_url: str, **indexer: Any) -> Settings:
    """Settings for tests; ``indexer`` keys are IndexerSettings env names."""
    return Settings(
        database=DatabaseSettings(DATABASE_URL=database_url),
        indexer=IndexerSettings(**indexer),
    )
