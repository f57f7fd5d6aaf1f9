#!/usr/bin/env python3
"""Event decoding for registered contracts.

Each log is tried against the interface registered for its emitting address:
topic0 selects the event through a per-contract dispatch table and the
indexed and non-indexed parameters are decoded with eth_abi.
"""

import logging
from collections.abc import Mapping
from typing import Any

from eth_abi import decode as abi_decode
from web3 import Web3

from .models import DecodedEvent, RawLog
from .registry import ContractRegistration, ContractRegistry
from .utils.hex_utility import to_bytes, to_hex_str

# Get logger for this module
logger = logging.getLogger(__name__)

DispatchTable = dict[str, dict[str, Any]]


def canonical_type(abi_input: Mapping[str, Any]) -> str:
    """Return the canonical ABI type string, expanding tuples."""
    typ: str = abi_input["type"]
    if typ.startswith("tuple"):
        inner = ",".join(canonical_type(component) for component in abi_input["components"])
        return f"({inner}){typ[len('tuple'):]}"
    return typ


def event_signature(event_abi: Mapping[str, Any]) -> str:
    """Build the canonical signature, e.g. ``Transfer(address,address,uint256)``."""
    types = ",".join(canonical_type(item) for item in event_abi.get("inputs", []))
    return f"{event_abi['name']}({types})"


def event_topic(event_abi: Mapping[str, Any]) -> str:
    """Keccak hash of the event signature as a 0x-prefixed hex string."""
    return to_hex_str(Web3.keccak(text=event_signature(event_abi)))


def build_dispatch_table(registration: ContractRegistration) -> DispatchTable:
    """Map topic0 to event ABI for every non-anonymous event of a contract."""
    table: DispatchTable = {}
    for event_abi in registration.abi:
        if event_abi.get("anonymous"):
            continue
        table[event_topic(event_abi)] = event_abi
    return table


def _is_dynamic(abi_input: Mapping[str, Any]) -> bool:
    """Dynamic indexed values are stored as their keccak hash in the topic."""
    typ = abi_input["type"]
    return typ in ("string", "bytes") or typ.endswith("]") or typ.startswith("tuple")


def normalize_value(abi_input: Mapping[str, Any], value: Any) -> Any:
    """Convert a decoded value to its canonical string or numeric form.

    Addresses become checksummed strings, byte strings become 0x hex, and
    arrays and tuples are converted element-wise.
    """
    typ: str = abi_input["type"]

    if typ.endswith("]"):
        element = dict(abi_input, type=typ[:typ.rindex("[")])
        return [normalize_value(element, item) for item in value]

    if typ == "tuple":
        return {
            component.get("name") or f"_{index}": normalize_value(component, item)
            for index, (component, item) in enumerate(zip(abi_input["components"], value))
        }

    match value:
        case bytes() | bytearray():
            return to_hex_str(value)
        case str() if typ == "address":
            return Web3.to_checksum_address(value)
        case _:
            return value


class EventDecoder:
    """Decodes raw logs against the contracts held by a registry.

    The registry is owned by the pipeline and passed in at construction;
    dispatch tables are derived from registrations and rebuilt whenever
    a registration for an address is replaced.
    """

    def __init__(self, registry: ContractRegistry) -> None:
        self.registry = registry
        self._tables: dict[str, tuple[ContractRegistration, DispatchTable]] = {}

    def _dispatch_table(self, registration: ContractRegistration) -> DispatchTable:
        cached = self._tables.get(registration.address)
        if cached is None or cached[0] is not registration:
            cached = (registration, build_dispatch_table(registration))
            self._tables[registration.address] = cached
        return cached[1]

    def decode(self, address: str, log: RawLog) -> DecodedEvent | None:
        """
        Decode a log emitted by ``address``.

        :param address: Emitting contract address (any case)
        :param log: The raw log
        :return: Decoded event, or None when the address is unregistered,
                 the topic matches no registered event, or the data is malformed
        """
        registration = self.registry.get(address)
        if registration is None or not log.topics:
            return None

        event_abi = self._dispatch_table(registration).get(to_hex_str(log.topics[0]))
        if event_abi is None:
            return None

        try:
            args = self._decode_args(event_abi, log)
        except Exception as e:
            logger.debug(
                f"Could not decode {event_abi['name']} log {log.log_index} "
                f"in {log.transaction_hash}: {e}"
            )
            return None

        return DecodedEvent(
            contract_address=Web3.to_checksum_address(registration.address),
            event_name=event_abi["name"],
            args=args,
        )

    def _decode_args(self, event_abi: Mapping[str, Any], log: RawLog) -> dict[str, Any]:
        """Decode indexed parameters from topics and the rest from data."""
        inputs: list[Mapping[str, Any]] = event_abi.get("inputs", [])
        indexed = [item for item in inputs if item.get("indexed")]
        non_indexed = [item for item in inputs if not item.get("indexed")]

        topics = log.topics[1:]
        if len(topics) != len(indexed):
            raise ValueError(
                f"expected {len(indexed)} indexed topics, got {len(topics)}"
            )

        decoded: dict[int, Any] = {}

        topic_iter = iter(topics)
        data_values = iter(
            abi_decode([canonical_type(item) for item in non_indexed], to_bytes(log.data))
            if non_indexed else ()
        )

        for position, item in enumerate(inputs):
            if item.get("indexed"):
                topic = next(topic_iter)
                if _is_dynamic(item):
                    decoded[position] = to_hex_str(topic)
                else:
                    value = abi_decode([canonical_type(item)], to_bytes(topic))[0]
                    decoded[position] = normalize_value(item, value)
            else:
                decoded[position] = normalize_value(item, next(data_values))

        return {
            (item.get("name") or f"_{position}"): decoded[position]
            for position, item in enumerate(inputs)
        }
