"""Tests for Transfer log decoding."""

from __future__ import annotations

import pytest
from conftest import ALICE, BOB, address_topic, block_hash, make_log
from hexbytes import HexBytes

from token_transfer_indexer.chain.events import (
    TRANSFER_EVENT_TOPIC,
    LogDecodeError,
    decode_transfer_log,
)


def test_transfer_topic_is_keccak_of_signature() -> None:
    assert TRANSFER_EVENT_TOPIC == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class TestDecodeTransferLog:
    def test_decodes_json_rpc_log(self) -> None:
        decoded = decode_transfer_log(make_log(100, 3, amount=2_500_000))

        assert decoded.block_number == 100
        assert decoded.log_index == 3
        assert decoded.from_address == ALICE
        assert decoded.to_address == BOB
        assert decoded.amount == "2500000"
        assert decoded.block_hash == block_hash(100)
        assert decoded.tx_hash.startswith("0x") and len(decoded.tx_hash) == 66

    def test_decodes_web3_style_log(self) -> None:
        raw = make_log(7, 1, amount=5)
        log = {
            "topics": [HexBytes(t) for t in raw["topics"]],
            "data": HexBytes(raw["data"]),
            "blockNumber": 7,
            "blockHash": HexBytes(raw["blockHash"]),
            "transactionHash": HexBytes(raw["transactionHash"]),
            "logIndex": 1,
        }

        decoded = decode_transfer_log(log)
        assert decoded.tx_hash == raw["transactionHash"]
        assert decoded.block_hash == raw["blockHash"]
        assert decoded.amount == "5"

    def test_accepts_hex_quantities(self) -> None:
        log = make_log(100, 2)
        log["blockNumber"] = "0x64"
        log["logIndex"] = "0x2"

        decoded = decode_transfer_log(log)
        assert decoded.block_number == 100
        assert decoded.log_index == 2

    def test_max_uint256_amount(self) -> None:
        decoded = decode_transfer_log(make_log(1, amount=2**256 - 1))
        assert decoded.amount == str(2**256 - 1)

    def test_missing_block_hash_is_allowed(self) -> None:
        log = make_log(5)
        del log["blockHash"]
        assert decode_transfer_log(log).block_hash is None

    def test_rejects_wrong_topic_count(self) -> None:
        log = make_log(1)
        log["topics"] = log["topics"][:2]
        with pytest.raises(LogDecodeError):
            decode_transfer_log(log)

    def test_rejects_other_event_signature(self) -> None:
        log = make_log(1)
        log["topics"][0] = "0x" + "ab" * 32
        with pytest.raises(LogDecodeError):
            decode_transfer_log(log)

    def test_rejects_dirty_address_padding(self) -> None:
        log = make_log(1)
        log["topics"][1] = "0x" + "ff" + address_topic(ALICE)[4:]
        with pytest.raises(LogDecodeError):
            decode_transfer_log(log)

    def test_rejects_short_data(self) -> None:
        log = make_log(1)
        log["data"] = "0x01"
        with pytest.raises(LogDecodeError):
            decode_transfer_log(log)

    def test_rejects_missing_fields(self) -> None:
        log = make_log(1)
        del log["transactionHash"]
        with pytest.raises(LogDecodeError):
            decode_transfer_log(log)

    def test_rejects_non_hex_data(self) -> None:
        log = make_log(1)
        log["data"] = "0xzz"
        with pytest.raises(LogDecodeError):
            decode_transfer_log(log)
