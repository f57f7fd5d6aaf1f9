"""Shared fixtures and chain test doubles."""

from datetime import datetime, timezone

import fakeredis.aioredis
import pytest
import pytest_asyncio
from eth_abi import encode
from web3 import Web3

from devlab_indexer.cache import MetricsCache
from devlab_indexer.fanout import Fanout
from devlab_indexer.metrics import MetricsAggregator
from devlab_indexer.models import (
    Block,
    RawLog,
    Receipt,
    TransactionData,
    TransactionRecord,
    TransactionStatus,
)
from devlab_indexer.registry import ContractRegistry
from devlab_indexer.store import PersistenceStore

TOKEN_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
DEX_ADDRESS = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
ALICE = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
BOB = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"

TRANSFER_TOPIC = Web3.keccak(text="Transfer(address,address,uint256)").to_0x_hex()
SWAP_TOPIC = Web3.keccak(text="Swap(address,address,address,uint256,uint256,uint256)").to_0x_hex()

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def address_topic(address: str) -> str:
    return "0x" + encode(["address"], [address]).hex()


def make_transfer_log(
    sender: str = ALICE,
    recipient: str = BOB,
    value: int = 1000,
    log_index: int = 0,
    transaction_hash: str = tx_hash(1),
    block_number: int = 100,
    address: str = TOKEN_ADDRESS,
) -> RawLog:
    return RawLog(
        address=address,
        topics=(TRANSFER_TOPIC, address_topic(sender), address_topic(recipient)),
        data="0x" + encode(["uint256"], [value]).hex(),
        log_index=log_index,
        transaction_hash=transaction_hash,
        block_number=block_number,
    )


def make_record(
    n: int,
    observed_at: datetime,
    status: TransactionStatus = TransactionStatus.SUCCESS,
    gas_used: int = 21000,
    block_number: int = 100,
) -> TransactionRecord:
    return TransactionRecord(
        hash=tx_hash(n),
        block_number=block_number,
        block_hash=tx_hash(10_000 + block_number),
        from_address=ALICE,
        to_address=BOB,
        value="0",
        gas_used=gas_used,
        gas_price="1000000000",
        status=status,
        observed_at=observed_at,
    )


class FakeChainFeed:
    """In-memory chain: blocks and receipts registered by the test."""

    def __init__(self) -> None:
        self.blocks: dict[int, Block] = {}
        self.receipts: dict[str, Receipt] = {}
        self.head = 0
        self.block_requests: list[int] = []
        self.receipt_requests: list[str] = []

    async def latest_block_number(self) -> int:
        return self.head

    async def get_block(self, number: int, full_transactions: bool = True) -> Block | None:
        self.block_requests.append(number)
        return self.blocks.get(number)

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        self.receipt_requests.append(tx_hash)
        return self.receipts.get(tx_hash)

    def add_block(
        self,
        number: int,
        timestamp: int,
        receipts: list[Receipt] | None = None,
        missing_receipts: list[str] | None = None,
    ) -> Block:
        """Add a block whose transactions are those of the given receipts."""
        receipts = receipts or []
        hashes = [r.transaction_hash for r in receipts] + list(missing_receipts or [])
        block = Block(
            number=number,
            hash=tx_hash(10_000 + number),
            timestamp=timestamp,
            parent_hash=tx_hash(10_000 + number - 1),
            transactions=tuple(
                TransactionData(
                    hash=h, from_address=ALICE, to_address=TOKEN_ADDRESS, value=0, gas_price=10**9
                )
                for h in hashes
            ),
        )
        self.blocks[number] = block
        for receipt in receipts:
            self.receipts[receipt.transaction_hash] = receipt
        self.head = max(self.head, number)
        return block


def make_receipt(
    n: int,
    block_number: int,
    logs: tuple[RawLog, ...] = (),
    status: TransactionStatus = TransactionStatus.SUCCESS,
    gas_used: int = 50_000,
) -> Receipt:
    return Receipt(
        transaction_hash=tx_hash(n),
        status=status,
        gas_used=gas_used,
        block_number=block_number,
        logs=logs,
    )


@pytest.fixture
def chain():
    """Empty in-memory chain."""
    return FakeChainFeed()


@pytest.fixture
def registry():
    """Registry watching the SampleERC20 token."""
    return ContractRegistry.from_config({"SampleERC20": TOKEN_ADDRESS})


@pytest.fixture
def fanout():
    return Fanout(queue_size=100)


@pytest_asyncio.fixture
async def store(tmp_path):
    """SQLite-backed store with tables created."""
    store = PersistenceStore(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}")
    await store.create_tables()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def cache():
    """Metrics cache over an in-memory Redis."""
    cache = MetricsCache(fakeredis.aioredis.FakeRedis(decode_responses=True))
    yield cache
    await cache.close()


@pytest.fixture
def aggregator(store, cache, fanout):
    """Aggregator with a frozen clock."""
    return MetricsAggregator(store, cache, fanout, clock=lambda: NOW)
