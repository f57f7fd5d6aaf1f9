"""
Chain feed for block ingestion.

Wraps an AsyncWeb3 HTTP connection for block and receipt reads, and provides
two block-arrival subscriptions: HTTP head polling and WebSocket newHeads
with automatic reconnection. Both deliver block numbers at-least-once.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, TransactionNotFound
from web3.providers import WebSocketProvider
from web3.utils.subscriptions import NewHeadsSubscription, NewHeadsSubscriptionContext

from .models import Block, RawLog, Receipt, TransactionData, TransactionStatus
from .utils.hex_utility import parse_hex_int, to_hex_str

BlockCallback = Callable[[int], Awaitable[Any]]


class ChainFeed(Protocol):
    """Read interface the ingestion pipeline requires from a chain."""

    async def latest_block_number(self) -> int: ...

    async def get_block(self, number: int, full_transactions: bool = True) -> Block | None: ...

    async def get_receipt(self, tx_hash: str) -> Receipt | None: ...


class BlockSubscription(Protocol):
    """Long-lived source of new block numbers."""

    async def start(self, callback: BlockCallback) -> None: ...

    async def stop(self) -> None: ...

    def get_status(self) -> dict[str, Any]: ...


def _field(data: Any, name: str, default: Any = None) -> Any:
    """Read a field from an AttributeDict, dict, or attribute-style object."""
    if hasattr(data, 'get') and callable(data.get):
        return data.get(name, default)
    return getattr(data, name, default)


def normalize_log(log: Any) -> RawLog:
    """Convert a provider log entry into a RawLog."""
    return RawLog(
        address=str(_field(log, 'address', '')),
        topics=tuple(to_hex_str(topic) for topic in _field(log, 'topics', []) or []),
        data=to_hex_str(_field(log, 'data', b'')),
        log_index=parse_hex_int(_field(log, 'logIndex', 0)),
        transaction_hash=to_hex_str(_field(log, 'transactionHash')),
        block_number=parse_hex_int(_field(log, 'blockNumber', 0)),
    )


def normalize_transaction(tx: Any) -> TransactionData:
    """Convert a provider transaction into TransactionData."""
    to_address = _field(tx, 'to')
    return TransactionData(
        hash=to_hex_str(_field(tx, 'hash')),
        from_address=str(_field(tx, 'from', '')),
        to_address=str(to_address) if to_address else None,
        value=parse_hex_int(_field(tx, 'value', 0)),
        gas_price=parse_hex_int(_field(tx, 'gasPrice', 0)),
    )


def normalize_block(block: Any) -> Block:
    """Convert provider block data into a Block.

    Transaction entries that are bare hashes (blocks fetched without
    full transactions) are dropped.
    """
    transactions = tuple(
        normalize_transaction(tx)
        for tx in _field(block, 'transactions', []) or []
        if not isinstance(tx, (bytes, str))
    )
    return Block(
        number=parse_hex_int(_field(block, 'number', 0)),
        hash=to_hex_str(_field(block, 'hash')),
        timestamp=parse_hex_int(_field(block, 'timestamp', 0)),
        parent_hash=to_hex_str(_field(block, 'parentHash')),
        gas_used=parse_hex_int(_field(block, 'gasUsed', 0)),
        gas_limit=parse_hex_int(_field(block, 'gasLimit', 0)),
        transactions=transactions,
    )


def normalize_receipt(receipt: Any) -> Receipt:
    """Convert a provider receipt into a Receipt, logs sorted by index."""
    logs = sorted(
        (normalize_log(log) for log in _field(receipt, 'logs', []) or []),
        key=lambda log: log.log_index,
    )
    contract_address = _field(receipt, 'contractAddress')
    return Receipt(
        transaction_hash=to_hex_str(_field(receipt, 'transactionHash')),
        status=(
            TransactionStatus.SUCCESS
            if parse_hex_int(_field(receipt, 'status', 0)) == 1
            else TransactionStatus.REVERT
        ),
        gas_used=parse_hex_int(_field(receipt, 'gasUsed', 0)),
        block_number=parse_hex_int(_field(receipt, 'blockNumber', 0)),
        logs=tuple(logs),
        contract_address=str(contract_address) if contract_address else None,
    )


class Web3ChainFeed:
    """ChainFeed backed by an AsyncWeb3 HTTP provider."""

    def __init__(self, rpc_url: str, request_timeout: int = 30, w3: AsyncWeb3 | None = None) -> None:
        """
        Initialize the feed.

        Args:
            rpc_url: HTTP RPC endpoint URL
            request_timeout: Request timeout in seconds
            w3: Preconfigured AsyncWeb3 instance (overrides rpc_url)
        """
        self.rpc_url = rpc_url
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={'timeout': request_timeout})
        )
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def latest_block_number(self) -> int:
        return await self.w3.eth.block_number

    async def get_block(self, number: int, full_transactions: bool = True) -> Block | None:
        """
        Fetch a block by number.

        :param number: Block number
        :param full_transactions: Include transaction bodies rather than hashes
        :return: Normalized block, or None if the node does not have it
        """
        try:
            block = await self.w3.eth.get_block(number, full_transactions=full_transactions)
        except BlockNotFound:
            return None
        if block is None:
            return None
        return normalize_block(block)

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        """Fetch a transaction receipt, None if it is not (yet) available."""
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return normalize_receipt(receipt)


class PollingBlockSubscription:
    """
    Block-arrival subscription that polls the chain head over HTTP.

    Every number between the last seen head and the current head is
    delivered in increasing order.
    """

    def __init__(self, feed: ChainFeed, interval: float = 2, lookback_blocks: int = 0) -> None:
        """
        Initialize the polling subscription.

        Args:
            feed: Chain feed used to read the head
            interval: Polling interval in seconds
            lookback_blocks: Number of blocks behind the head to deliver on startup
        """
        self.feed = feed
        self.interval = interval
        self.lookback_blocks = lookback_blocks

        # State tracking
        self.last_seen_block: int | None = None
        self.is_running = False

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def initial_sync(self, callback: BlockCallback) -> None:
        """
        Record the current head and deliver the lookback range.

        Args:
            callback: Async function to call for each block number
        """
        current_block = await self.feed.latest_block_number()
        from_block = max(0, current_block - self.lookback_blocks)

        self.logger.info(f"Initial sync from block {from_block} to {current_block}")

        if self.lookback_blocks:
            for number in range(from_block, current_block + 1):
                await callback(number)

        self.last_seen_block = current_block

    async def poll_for_blocks(self, callback: BlockCallback) -> None:
        """
        Deliver block numbers produced since the last poll.

        Args:
            callback: Async function to call for each new block number
        """
        try:
            current_block = await self.feed.latest_block_number()

            if self.last_seen_block is not None and current_block <= self.last_seen_block:
                return

            from_block = (
                self.last_seen_block + 1 if self.last_seen_block is not None else current_block
            )

            for number in range(from_block, current_block + 1):
                await callback(number)
                self.last_seen_block = number

        except Exception as e:
            self.logger.error(f"Error polling for blocks: {e}")
            # last_seen_block only advances past delivered numbers

    async def start(self, callback: BlockCallback) -> None:
        """
        Start polling at the configured interval until stopped.

        Args:
            callback: Async function to call when block numbers arrive
        """
        if self.is_running:
            self.logger.warning("Polling already running")
            return

        self.is_running = True
        self.logger.info(f"Starting block polling every {self.interval} seconds")

        await self.initial_sync(callback)

        while self.is_running:
            try:
                await asyncio.sleep(self.interval)
                await self.poll_for_blocks(callback)
            except asyncio.CancelledError:
                self.logger.info("Polling cancelled")
                break
            except Exception as e:
                self.logger.error(f"Error in polling loop: {e}")
                await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        """Stop the polling loop."""
        self.logger.info("Stopping block polling")
        self.is_running = False

    def get_status(self) -> dict[str, Any]:
        return {
            "mode": "polling",
            "is_running": self.is_running,
            "last_seen_block": self.last_seen_block,
            "interval": self.interval,
        }


class ConnectionState(Enum):
    """Connection state for the WebSocket subscription."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class WebSocketBlockSubscription:
    """
    Block-arrival subscription using eth_subscribe("newHeads").

    Features:
    - Real-time head notifications over WebSocket
    - Automatic reconnection with exponential backoff
    """

    def __init__(self, websocket_url: str, max_retries: int = 5, request_timeout: int = 60) -> None:
        """
        Initialize the subscription.

        Args:
            websocket_url: WebSocket RPC endpoint URL
            max_retries: Maximum consecutive reconnection attempts
            request_timeout: WebSocket request timeout in seconds
        """
        self.websocket_url = websocket_url
        self.max_retries = max_retries
        self.request_timeout = request_timeout

        self.connection_state = ConnectionState.DISCONNECTED
        self.async_w3: AsyncWeb3 | None = None
        self.block_callback: BlockCallback | None = None
        self.is_running = False

        # Retry configuration
        self.base_delay = 1
        self.max_delay = 60

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def start(self, callback: BlockCallback) -> None:
        """Subscribe to new heads and deliver block numbers until stopped."""
        self.block_callback = callback
        self.is_running = True
        retry_count = 0

        while self.is_running and retry_count < self.max_retries:
            try:
                self.connection_state = ConnectionState.CONNECTING
                self.logger.info(f"Connecting to WebSocket: {self.websocket_url}")

                async with AsyncWeb3(
                    WebSocketProvider(
                        self.websocket_url,
                        request_timeout=self.request_timeout,
                        subscription_response_queue_size=10000,
                    )
                ) as w3:
                    self.async_w3 = w3
                    self.connection_state = ConnectionState.CONNECTED
                    self.logger.info("WebSocket connected successfully")
                    retry_count = 0

                    await w3.subscription_manager.subscribe([
                        NewHeadsSubscription(label="devlab-new-heads", handler=self._head_handler)
                    ])
                    await w3.subscription_manager.handle_subscriptions()

                if self.is_running:
                    retry_count += 1
                    delay = min(self.base_delay * (2 ** retry_count), self.max_delay)
                    self.logger.warning(
                        f"WebSocket subscription closed by server, reconnecting in {delay} seconds..."
                    )
                    self.connection_state = ConnectionState.RECONNECTING
                    await asyncio.sleep(delay)

            except asyncio.CancelledError:
                break
            except (ConnectionError, OSError) as e:
                retry_count += 1
                delay = min(self.base_delay * (2 ** retry_count), self.max_delay)

                self.logger.warning(
                    f"WebSocket connection failed (attempt {retry_count}/{self.max_retries}): {e}"
                )

                if retry_count < self.max_retries:
                    self.logger.info(f"Retrying in {delay} seconds...")
                    self.connection_state = ConnectionState.RECONNECTING
                    await asyncio.sleep(delay)
                else:
                    self.logger.error("Max WebSocket retries reached")
                    self.connection_state = ConnectionState.FAILED
                    raise
            finally:
                self.async_w3 = None

    async def _head_handler(self, handler_context: NewHeadsSubscriptionContext) -> None:
        """Forward the number of each new head to the callback."""
        try:
            block_number = parse_hex_int(_field(handler_context.result, 'number'))
            if self.block_callback:
                await self.block_callback(block_number)
        except Exception as e:
            self.logger.error(f"Error processing new head: {e}", exc_info=True)

    async def stop(self) -> None:
        """Stop the subscription and disconnect."""
        self.logger.info("Stopping WebSocket subscription...")
        self.is_running = False

        try:
            if self.async_w3 is not None:
                await self.async_w3.subscription_manager.unsubscribe_all()
        except Exception as e:
            self.logger.warning(f"Error during cleanup: {e}")
        finally:
            self.connection_state = ConnectionState.DISCONNECTED

    def get_status(self) -> dict[str, Any]:
        return {
            "mode": "websocket",
            "is_running": self.is_running,
            "connection_state": self.connection_state.value,
            "websocket_url": self.websocket_url,
        }
