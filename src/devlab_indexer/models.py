#!/usr/bin/env python3
"""Data models for the DevLab indexer.

This module provides immutable data classes for the chain objects the
indexer reads (blocks, receipts, logs) and the records it persists and
publishes (transactions, decoded events, metric samples).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TransactionStatus(str, Enum):
    """Execution outcome of a transaction."""
    SUCCESS = "success"
    REVERT = "revert"


class MetricType(str, Enum):
    """Kinds of metric samples the aggregator produces."""
    TPS = "tps"
    ERROR_RATE = "error_rate"
    AVG_GAS = "avg_gas"
    LATENCY = "latency"


@dataclass(frozen=True, slots=True)
class RawLog:
    """A single log entry as emitted in a transaction receipt.

    Attributes:
        address: Emitting contract address (as reported by the node)
        topics: Hex-encoded topics, topic0 being the event signature hash
        data: Hex-encoded non-indexed event data
        log_index: Index of the log within the block
        transaction_hash: Hash of the emitting transaction
        block_number: Block the log was included in
    """

    address: str
    topics: tuple[str, ...]
    data: str
    log_index: int
    transaction_hash: str
    block_number: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "address": self.address,
            "topics": list(self.topics),
            "data": self.data,
            "logIndex": self.log_index,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
        }


@dataclass(frozen=True, slots=True)
class TransactionData:
    """A transaction as included in a block body."""

    hash: str
    from_address: str
    to_address: str | None
    value: int
    gas_price: int


@dataclass(frozen=True, slots=True)
class Block:
    """A finalized block with its transactions in native order."""

    number: int
    hash: str
    timestamp: int
    parent_hash: str = ""
    gas_used: int = 0
    gas_limit: int = 0
    transactions: tuple[TransactionData, ...] = ()

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"Block(number={self.number}, "
            f"hash={self.hash[:10]}..., "
            f"txs={len(self.transactions)})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "number": self.number,
            "hash": self.hash,
            "timestamp": self.timestamp,
            "parentHash": self.parent_hash,
            "gasUsed": str(self.gas_used),
            "gasLimit": str(self.gas_limit),
            "transactions": [tx.hash for tx in self.transactions],
        }


@dataclass(frozen=True, slots=True)
class Receipt:
    """Post-execution record of a transaction."""

    transaction_hash: str
    status: TransactionStatus
    gas_used: int
    block_number: int
    logs: tuple[RawLog, ...] = ()
    contract_address: str | None = None


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    """A persisted transaction, written once and never mutated.

    Attributes:
        hash: Transaction hash, the uniqueness key
        block_number: Block the transaction was included in
        block_hash: Hash of that block
        from_address: Sender
        to_address: Recipient, None for contract creation
        value: Transferred value in wei, as a decimal string
        gas_used: Gas consumed according to the receipt
        gas_price: Gas price in wei, as a decimal string
        status: Execution outcome
        contract_address: Created contract, if any
        raw_logs: Receipt logs as serializable dicts
        observed_at: Block timestamp (UTC)
    """

    hash: str
    block_number: int
    block_hash: str
    from_address: str
    to_address: str | None
    value: str
    gas_used: int
    gas_price: str
    status: TransactionStatus
    observed_at: datetime
    contract_address: str | None = None
    raw_logs: tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "transactionHash": self.hash,
            "blockNumber": self.block_number,
            "blockHash": self.block_hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": self.value,
            "gasUsed": self.gas_used,
            "gasPrice": self.gas_price,
            "status": self.status.value,
            "contractAddress": self.contract_address,
            "logs": list(self.raw_logs),
            "timestamp": self.observed_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class DecodedEvent:
    """A log matched against a registered interface."""

    contract_address: str
    event_name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ContractEventRecord:
    """A persisted decoded event, unique by (transaction_hash, log_index)."""

    contract_address: str
    event_name: str
    block_number: int
    transaction_hash: str
    log_index: int
    decoded_args: dict[str, Any]
    observed_at: datetime

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"ContractEvent({self.event_name}, "
            f"contract={self.contract_address[:10]}..., "
            f"block={self.block_number}, log={self.log_index})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the push-channel payload shape."""
        return {
            "contractAddress": self.contract_address,
            "eventName": self.event_name,
            "args": self.decoded_args,
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "logIndex": self.log_index,
            "timestamp": self.observed_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class MetricSample:
    """One point of a metric time series."""

    metric_type: MetricType
    value: float
    observed_at: datetime
    block_number: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the push-channel payload shape."""
        payload: dict[str, Any] = {
            "type": self.metric_type.value,
            "value": self.value,
            "timestamp": self.observed_at.isoformat(),
        }
        if self.block_number is not None:
            payload["blockNumber"] = self.block_number
        return payload


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    """Current value of every metric, as served to dashboards."""

    tps: float
    error_rate: float
    avg_gas: float
    latency: float
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "tps": self.tps,
            "errorRate": self.error_rate,
            "avgGas": self.avg_gas,
            "latency": self.latency,
            "timestamp": self.timestamp.isoformat(),
        }
