#!/usr/bin/env python3
"""Block ingestion pipeline.

The pipeline consumes block numbers from a subscription, scans each block's
transactions and receipts, persists transaction and decoded event records
exactly once, publishes events to the fan-out and drives the metric
aggregator. Scheduled metric collection and retention cleanup run beside it.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from .cache import MetricsCache
from .decoder import EventDecoder
from .fanout import Fanout
from .feed import BlockSubscription, ChainFeed
from .metrics import MetricsAggregator
from .models import (
    Block,
    ContractEventRecord,
    RawLog,
    Receipt,
    TransactionData,
    TransactionRecord,
)
from .scheduler import Scheduler
from .store import PersistenceStore

# Get logger for this module
logger = logging.getLogger(__name__)


class StartupError(RuntimeError):
    """The store, cache or chain could not be reached at initialization."""


class IngestionPipeline:
    """
    Orchestrates per-block ingestion and the scheduled metric tasks.

    Block numbers are processed sequentially and never go backward within
    a session; gaps and missing blocks are logged and skipped. Failures
    are isolated to the transaction or log they occur in.
    """

    def __init__(
        self,
        feed: ChainFeed,
        store: PersistenceStore,
        decoder: EventDecoder,
        aggregator: MetricsAggregator,
        fanout: Fanout,
        subscription: BlockSubscription | None = None,
        cache: MetricsCache | None = None,
        metrics_interval: float = 10,
        cleanup_interval: float = 3600,
        task_timeout: float = 30,
        queue_size: int = 1000,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            feed: Chain reads (blocks and receipts)
            store: Persistence for records and samples
            decoder: Event decoder owning the contract registry
            aggregator: Metric computation and publication
            fanout: Observer fan-out for decoded events
            subscription: Source of new block numbers
            cache: Metrics cache, checked for reachability at startup
            metrics_interval: Seconds between scheduled metric collections
            cleanup_interval: Seconds between retention sweeps
            task_timeout: Upper bound on one scheduled task run
            queue_size: Maximum block numbers buffered ahead of processing
        """
        self.feed = feed
        self.store = store
        self.decoder = decoder
        self.aggregator = aggregator
        self.fanout = fanout
        self.subscription = subscription
        self.cache = cache

        self.scheduler = Scheduler()
        self.scheduler.add(
            "collect-metrics",
            metrics_interval,
            self.aggregator.collect_metrics,
            timeout=min(metrics_interval, task_timeout),
        )
        self.scheduler.add(
            "clean-old-metrics",
            cleanup_interval,
            self.aggregator.clean_old_metrics,
            timeout=min(cleanup_interval, task_timeout),
        )

        # Session state
        self.high_water_mark: int | None = None
        self._last_block: Block | None = None
        self.is_running = False

        # Async coordination
        self._blocks: asyncio.Queue[int] = asyncio.Queue(maxsize=queue_size)
        self._worker_task: asyncio.Task | None = None
        self._subscription_task: asyncio.Task | None = None
        self._current_block: asyncio.Future | None = None
        self._shutdown_event = asyncio.Event()

        # Metrics tracking
        self.blocks_processed = 0
        self.blocks_skipped = 0
        self.blocks_out_of_order = 0
        self.transactions_stored = 0
        self.transactions_duplicated = 0
        self.transactions_skipped = 0
        self.events_stored = 0
        self.events_duplicated = 0

    async def _check_dependencies(self) -> None:
        """Fail fast when a shared resource is unreachable."""
        try:
            await self.store.ping()
            await self.store.create_tables()
            logger.info("Connected to database")
        except Exception as e:
            raise StartupError(f"Cannot reach database: {e}") from e

        if self.cache is not None:
            try:
                await self.cache.ping()
                logger.info("Connected to Redis")
            except Exception as e:
                raise StartupError(f"Cannot reach Redis: {e}") from e

        try:
            head = await self.feed.latest_block_number()
            logger.info(f"Connected to chain, head at block {head}")
        except Exception as e:
            raise StartupError(f"Cannot reach chain RPC: {e}") from e

    async def on_new_block(self, block_number: int) -> bool:
        """
        Ingest one block.

        Args:
            block_number: Number delivered by the subscription

        Returns:
            True if the block was scanned, False if it was dropped or unavailable
        """
        if self.high_water_mark is not None:
            if block_number < self.high_water_mark:
                self.blocks_out_of_order += 1
                logger.debug(
                    f"Ignoring block {block_number} behind session head {self.high_water_mark}"
                )
                return False

            if block_number > self.high_water_mark + 1:
                first_missing = self.high_water_mark + 1
                last_missing = block_number - 1
                self.blocks_skipped += last_missing - first_missing + 1
                logger.warning(
                    f"Block feed skipped {first_missing}"
                    f"{'' if first_missing == last_missing else f'-{last_missing}'}"
                )

        self.high_water_mark = (
            block_number if self.high_water_mark is None
            else max(self.high_water_mark, block_number)
        )

        try:
            block = await self.feed.get_block(block_number, full_transactions=True)
        except Exception as e:
            self.blocks_skipped += 1
            logger.warning(f"Error fetching block {block_number}, skipping: {e}")
            return False

        if block is None:
            self.blocks_skipped += 1
            logger.warning(f"Block {block_number} not available, skipping")
            return False

        logger.debug(f"Processing {block}")

        for tx in block.transactions:
            await self.process_transaction(tx, block)

        await self._record_block_metrics(block)

        self._last_block = block
        self.blocks_processed += 1

        if self.blocks_processed % 100 == 0:
            self.log_metrics()

        return True

    async def process_transaction(self, tx: TransactionData, block: Block) -> bool:
        """
        Fetch the receipt, persist the transaction and process its logs.

        Returns:
            True if the transaction record is stored (now or previously)
        """
        try:
            receipt = await self.feed.get_receipt(tx.hash)
        except Exception as e:
            self.transactions_skipped += 1
            logger.warning(f"Error fetching receipt for {tx.hash}, skipping: {e}")
            return False

        if receipt is None:
            self.transactions_skipped += 1
            logger.warning(f"Receipt for {tx.hash} not available, skipping")
            return False

        record = self._build_transaction_record(tx, receipt, block)

        try:
            inserted = await self.store.insert_transaction(record)
        except Exception as e:
            self.transactions_skipped += 1
            logger.error(f"Error storing transaction {tx.hash}: {e}")
            return False

        if inserted:
            self.transactions_stored += 1
        else:
            self.transactions_duplicated += 1

        for log in receipt.logs:
            await self.process_log(log, tx, block)

        return True

    async def process_log(
        self, log: RawLog, tx: TransactionData, block: Block
    ) -> ContractEventRecord | None:
        """
        Decode and persist one log, publishing it if newly stored.

        Returns:
            The stored event, or None for unrecognized, duplicate or failed logs
        """
        try:
            decoded = self.decoder.decode(log.address, log)
            if decoded is None:
                return None

            record = ContractEventRecord(
                contract_address=decoded.contract_address,
                event_name=decoded.event_name,
                block_number=block.number,
                transaction_hash=tx.hash,
                log_index=log.log_index,
                decoded_args=decoded.args,
                observed_at=_block_time(block),
            )

            if not await self.store.insert_event(record):
                self.events_duplicated += 1
                return None

            self.events_stored += 1
            logger.debug(f"Stored {record}")
            self.fanout.publish_event(record)
            return record

        except Exception as e:
            logger.error(f"Error processing log {log.log_index} of {tx.hash}: {e}")
            return None

    async def _record_block_metrics(self, block: Block) -> None:
        """Record block latency and recount TPS after a block is scanned."""
        previous = self._last_block
        if previous is None or previous.number != block.number - 1:
            previous = None
            if block.number > 0:
                try:
                    previous = await self.feed.get_block(block.number - 1, full_transactions=False)
                except Exception as e:
                    logger.warning(f"Error fetching block {block.number - 1} for latency: {e}")

        try:
            await self.aggregator.record_latency(block, previous)
        except Exception as e:
            logger.error(f"Error updating block metrics: {e}")

        try:
            await self.aggregator.compute_tps()
        except Exception as e:
            logger.error(f"Error updating TPS metrics: {e}")

    @staticmethod
    def _build_transaction_record(
        tx: TransactionData, receipt: Receipt, block: Block
    ) -> TransactionRecord:
        return TransactionRecord(
            hash=tx.hash,
            block_number=block.number,
            block_hash=block.hash,
            from_address=tx.from_address,
            to_address=tx.to_address,
            value=str(tx.value),
            gas_used=receipt.gas_used,
            gas_price=str(tx.gas_price),
            status=receipt.status,
            contract_address=receipt.contract_address,
            raw_logs=tuple(log.to_dict() for log in receipt.logs),
            observed_at=_block_time(block),
        )

    async def enqueue_block(self, block_number: int) -> None:
        """Subscription callback: buffer a block number for the worker."""
        await self._blocks.put(block_number)

    async def _block_worker(self) -> None:
        """Process buffered block numbers one at a time."""
        while True:
            block_number = await self._blocks.get()
            try:
                # Shielded so that stop() lets an in-flight block finish its writes
                self._current_block = asyncio.ensure_future(self.on_new_block(block_number))
                await asyncio.shield(self._current_block)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error processing block {block_number}: {e}", exc_info=True)
            finally:
                self._blocks.task_done()

    async def start(self) -> None:
        """
        Verify dependencies, then start the subscription, the block worker
        and the scheduled tasks.

        Raises:
            StartupError: If the store, cache or chain is unreachable
        """
        if self.is_running:
            logger.warning("Pipeline already running")
            return

        logger.info("Starting ingestion pipeline...")
        await self._check_dependencies()

        self.is_running = True
        self._shutdown_event.clear()
        self._worker_task = asyncio.create_task(self._block_worker(), name="block-worker")

        if self.subscription is not None:
            self._subscription_task = asyncio.create_task(
                self.subscription.start(self.enqueue_block), name="block-subscription"
            )

        self.scheduler.start()
        logger.info(f"Ingestion pipeline started ({len(self.decoder.registry)} contracts watched)")

    async def stop(self) -> None:
        """Unsubscribe, cancel scheduled tasks and let the current block finish."""
        if not self.is_running:
            return

        logger.info("Stopping ingestion pipeline...")
        self.is_running = False

        if self.subscription is not None:
            await self.subscription.stop()
        await _cancel(self._subscription_task)
        self._subscription_task = None

        await self.scheduler.stop()

        await _cancel(self._worker_task)
        self._worker_task = None
        if self._current_block is not None and not self._current_block.done():
            try:
                await self._current_block
            except Exception as e:
                logger.error(f"Error finishing in-flight block: {e}")

        self.log_metrics()
        logger.info("Ingestion pipeline stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def run(self) -> None:
        """Start the pipeline if needed and block until shutdown or subscription failure."""
        if not self.is_running:
            await self.start()
        try:
            while self.is_running:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass

                task = self._subscription_task
                if task is not None and task.done():
                    if not task.cancelled() and task.exception() is not None:
                        logger.error(f"Block subscription failed: {task.exception()}")
                    else:
                        logger.error("Block subscription ended")
                    break
        finally:
            await self.stop()

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "high_water_mark": self.high_water_mark,
            "queued_blocks": self._blocks.qsize(),
            "blocks_processed": self.blocks_processed,
            "blocks_skipped": self.blocks_skipped,
            "blocks_out_of_order": self.blocks_out_of_order,
            "transactions_stored": self.transactions_stored,
            "transactions_duplicated": self.transactions_duplicated,
            "transactions_skipped": self.transactions_skipped,
            "events_stored": self.events_stored,
            "events_duplicated": self.events_duplicated,
            "scheduled_tasks": self.scheduler.get_stats(),
            "subscription": self.subscription.get_status() if self.subscription is not None else None,
        }

    def log_metrics(self) -> None:
        """Log current ingestion counters."""
        logger.info(
            f"Pipeline Metrics: "
            f"Head={self.high_water_mark}, "
            f"Blocks={self.blocks_processed} (skipped {self.blocks_skipped}), "
            f"Txs={self.transactions_stored} (dup {self.transactions_duplicated}, "
            f"skipped {self.transactions_skipped}), "
            f"Events={self.events_stored} (dup {self.events_duplicated})"
        )


def _block_time(block: Block) -> datetime:
    return datetime.fromtimestamp(block.timestamp, tz=timezone.utc)


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None:
        return
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass  # Expected when cancelling
    except Exception as e:
        logger.error(f"Task {task.get_name()} failed: {e}")
