"""Chain access layer - RPC client, retry policy and event decoding."""

from token_transfer_indexer.chain.client import (
    BlockInfo,
    ChainClient,
    ChainClientError,
    TransientRPCError,
)
from token_transfer_indexer.chain.events import (
    TRANSFER_EVENT_TOPIC,
    DecodedTransfer,
    LogDecodeError,
    decode_transfer_log,
)
from token_transfer_indexer.chain.retry import RetryPolicy

__all__ = [
    "TRANSFER_EVENT_TOPIC",
    "BlockInfo",
    "ChainClient",
    "ChainClientError",
    "DecodedTransfer",
    "LogDecodeError",
    "RetryPolicy",
    "TransientRPCError",
    "decode_transfer_log",
]
