#!/usr/bin/env python3
"""Unit tests for the event decoder."""

import pytest
from eth_abi import encode
from web3 import Web3

from devlab_indexer.decoder import (
    EventDecoder,
    build_dispatch_table,
    canonical_type,
    event_signature,
    event_topic,
    normalize_value,
)
from devlab_indexer.models import RawLog
from devlab_indexer.registry import ContractRegistry

from conftest import (
    ALICE,
    BOB,
    DEX_ADDRESS,
    SWAP_TOPIC,
    TOKEN_ADDRESS,
    TRANSFER_TOPIC,
    address_topic,
    make_transfer_log,
    tx_hash,
)

TRANSFER_ABI = {
    "type": "event",
    "name": "Transfer",
    "anonymous": False,
    "inputs": [
        {"indexed": True, "name": "from", "type": "address"},
        {"indexed": True, "name": "to", "type": "address"},
        {"indexed": False, "name": "value", "type": "uint256"},
    ],
}


class TestSignatures:
    def test_event_signature(self):
        assert event_signature(TRANSFER_ABI) == "Transfer(address,address,uint256)"

    def test_event_topic(self):
        assert event_topic(TRANSFER_ABI) == TRANSFER_TOPIC

    def test_canonical_tuple_type(self):
        abi_input = {
            "type": "tuple[]",
            "components": [{"type": "address"}, {"type": "uint256"}],
        }
        assert canonical_type(abi_input) == "(address,uint256)[]"

    def test_dispatch_table_covers_all_events(self, registry):
        table = build_dispatch_table(registry.get(TOKEN_ADDRESS))

        assert len(table) == 4
        assert table[TRANSFER_TOPIC]["name"] == "Transfer"


class TestNormalizeValue:
    def test_address_checksummed(self):
        assert normalize_value({"type": "address"}, ALICE.lower()) == ALICE

    def test_bytes_to_hex(self):
        assert normalize_value({"type": "bytes32"}, b"\x01" * 32) == "0x" + "01" * 32

    def test_array_elementwise(self):
        assert normalize_value({"type": "address[]"}, [ALICE.lower(), BOB.lower()]) == [ALICE, BOB]

    def test_tuple_to_dict(self):
        abi_input = {
            "type": "tuple",
            "components": [{"name": "owner", "type": "address"}, {"name": "", "type": "uint256"}],
        }
        assert normalize_value(abi_input, (ALICE.lower(), 7)) == {"owner": ALICE, "_1": 7}


class TestEventDecoder:
    """Test suite for EventDecoder."""

    def test_decode_transfer(self, registry):
        """A Transfer log yields its three named arguments."""
        decoder = EventDecoder(registry)
        log = make_transfer_log(ALICE, BOB, 10**18)

        event = decoder.decode(TOKEN_ADDRESS, log)

        assert event is not None
        assert event.event_name == "Transfer"
        assert event.contract_address == TOKEN_ADDRESS
        assert event.args == {"from": ALICE, "to": BOB, "value": 10**18}
        assert list(event.args) == ["from", "to", "value"]

    def test_address_lookup_ignores_case(self, registry):
        decoder = EventDecoder(registry)
        assert decoder.decode(TOKEN_ADDRESS.lower(), make_transfer_log()) is not None

    def test_unregistered_address(self, registry):
        """Logs from unregistered contracts produce no event."""
        decoder = EventDecoder(registry)
        log = make_transfer_log(address=DEX_ADDRESS)

        assert decoder.decode(DEX_ADDRESS, log) is None

    def test_unknown_topic(self, registry):
        decoder = EventDecoder(registry)
        log = RawLog(
            address=TOKEN_ADDRESS,
            topics=("0x" + "ab" * 32,),
            data="0x",
            log_index=0,
            transaction_hash=tx_hash(1),
            block_number=1,
        )

        assert decoder.decode(TOKEN_ADDRESS, log) is None

    def test_log_without_topics(self, registry):
        decoder = EventDecoder(registry)
        log = RawLog(TOKEN_ADDRESS, (), "0x", 0, tx_hash(1), 1)

        assert decoder.decode(TOKEN_ADDRESS, log) is None

    def test_malformed_data(self, registry):
        """Truncated data is a silent no-match, never an exception."""
        decoder = EventDecoder(registry)
        log = RawLog(
            address=TOKEN_ADDRESS,
            topics=(TRANSFER_TOPIC, address_topic(ALICE), address_topic(BOB)),
            data="0x1234",
            log_index=0,
            transaction_hash=tx_hash(1),
            block_number=1,
        )

        assert decoder.decode(TOKEN_ADDRESS, log) is None

    def test_topic_count_mismatch(self, registry):
        """A log whose indexed layout differs from the registered one does not match."""
        decoder = EventDecoder(registry)
        log = RawLog(
            address=TOKEN_ADDRESS,
            topics=(TRANSFER_TOPIC, address_topic(ALICE)),
            data="0x" + encode(["uint256"], [1]).hex(),
            log_index=0,
            transaction_hash=tx_hash(1),
            block_number=1,
        )

        assert decoder.decode(TOKEN_ADDRESS, log) is None

    def test_decode_swap(self):
        """Three indexed addresses and three data words."""
        registry = ContractRegistry.from_config({"MiniDEX": DEX_ADDRESS})
        decoder = EventDecoder(registry)
        log = RawLog(
            address=DEX_ADDRESS,
            topics=(SWAP_TOPIC, address_topic(ALICE), address_topic(TOKEN_ADDRESS), address_topic(BOB)),
            data="0x" + encode(["uint256", "uint256", "uint256"], [500, 490, 1_700_000_000]).hex(),
            log_index=3,
            transaction_hash=tx_hash(2),
            block_number=7,
        )

        event = decoder.decode(DEX_ADDRESS, log)

        assert event is not None
        assert event.event_name == "Swap"
        assert event.args == {
            "user": ALICE,
            "tokenIn": TOKEN_ADDRESS,
            "tokenOut": BOB,
            "amountIn": 500,
            "amountOut": 490,
            "timestamp": 1_700_000_000,
        }

    def test_dynamic_indexed_value_kept_as_hash(self):
        abi = [{
            "type": "event",
            "name": "Named",
            "anonymous": False,
            "inputs": [{"indexed": True, "name": "label", "type": "string"}],
        }]
        registry = ContractRegistry()
        registry.add_contract("Namer", TOKEN_ADDRESS, abi)
        label_hash = Web3.keccak(text="hello").to_0x_hex()
        log = RawLog(
            address=TOKEN_ADDRESS,
            topics=(Web3.keccak(text="Named(string)").to_0x_hex(), label_hash),
            data="0x",
            log_index=0,
            transaction_hash=tx_hash(1),
            block_number=1,
        )

        event = EventDecoder(registry).decode(TOKEN_ADDRESS, log)

        assert event.args == {"label": label_hash}

    def test_replaced_registration_rebuilds_table(self, registry):
        decoder = EventDecoder(registry)
        assert decoder.decode(TOKEN_ADDRESS, make_transfer_log()) is not None

        registry.remove(TOKEN_ADDRESS)
        registry.add_contract("MiniDEX", TOKEN_ADDRESS, [
            {"type": "event", "name": "Other", "anonymous": False, "inputs": []}
        ])

        assert decoder.decode(TOKEN_ADDRESS, make_transfer_log()) is None
