"""ERC20 Transfer event decoding."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from hexbytes import HexBytes
from web3 import AsyncWeb3

from token_transfer_indexer.chain.client import to_hex

# ERC20 Transfer(address,address,uint256)
TRANSFER_EVENT_TOPIC = to_hex(AsyncWeb3.keccak(text="Transfer(address,address,uint256)"))


class LogDecodeError(ValueError):
    """Raised when a raw log cannot be decoded as an ERC20 Transfer."""


@dataclass(frozen=True)
class DecodedTransfer:
    """A Transfer log decoded into its natural key, block number and payload."""

    tx_hash: str
    log_index: int
    block_number: int
    from_address: str
    to_address: str
    amount: str
    block_hash: str | None = None


def _topic_to_address(topic: Any) -> str:
    raw = bytes(HexBytes(topic))
    if len(raw) != 32:
        raise LogDecodeError(f"address topic must be 32 bytes, got {len(raw)}")
    if any(raw[:12]):
        raise LogDecodeError("address topic has non-zero padding")
    return "0x" + raw[12:].hex()


def _field(log: dict[str, Any], *names: str) -> Any:
    for name in names:
        if log.get(name) is not None:
            return log[name]
    raise LogDecodeError(f"log is missing {names[0]}")


def decode_transfer_log(log: dict[str, Any]) -> DecodedTransfer:
    """Decode a raw ``eth_getLogs`` entry.

    Accepts both web3 ``AttributeDict`` style entries (HexBytes values,
    snake_case aliases) and plain JSON-RPC dicts (hex strings).

    Raises:
        LogDecodeError: If topics/data don't match the Transfer ABI.
    """
    try:
        topics = list(_field(log, "topics"))
        if len(topics) != 3:
            raise LogDecodeError(f"expected 3 topics, got {len(topics)}")
        if to_hex(topics[0]) != TRANSFER_EVENT_TOPIC:
            raise LogDecodeError("topic0 is not the Transfer signature")

        data = bytes(HexBytes(_field(log, "data")))
        if len(data) != 32:
            raise LogDecodeError(f"expected 32 bytes of data, got {len(data)}")

        block_number = _field(log, "blockNumber", "block_number")
        log_index = _field(log, "logIndex", "log_index")
        return DecodedTransfer(
            tx_hash=to_hex(_field(log, "transactionHash", "transaction_hash")),
            log_index=int(log_index, 16) if isinstance(log_index, str) else int(log_index),
            block_number=int(block_number, 16) if isinstance(block_number, str) else int(block_number),
            from_address=_topic_to_address(topics[1]),
            to_address=_topic_to_address(topics[2]),
            amount=str(int.from_bytes(data, "big")),
            block_hash=to_hex(log["blockHash"]) if log.get("blockHash") is not None else None,
        )
    except LogDecodeError:
        raise
    except (TypeError, ValueError) as e:
        raise LogDecodeError(f"malformed log: {e}") from e
