#!/usr/bin/env python3
"""Rolling performance metrics derived from persisted transactions.

This module computes throughput, error rate, average gas and block latency.
Every value is read back from the store (never from in-flight data), then
appended as a sample, cached for cheap current-value reads and published
to the fan-out.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from .cache import MetricsCache
from .fanout import Fanout
from .models import Block, MetricSample, MetricsSnapshot, MetricType
from .store import PersistenceStore

# Get logger for this module
logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MetricsAggregator:
    """Computes, records and publishes windowed chain metrics.

    This class is responsible for:
    - TPS over the last 10 seconds
    - Error rate and average gas over the last 60 seconds
    - Block-to-block latency per ingested block
    - Serving current values from the cache
    - Evicting samples past the retention period
    """

    TPS_WINDOW_SECONDS: int = 10
    ERROR_RATE_WINDOW_SECONDS: int = 60
    GAS_WINDOW_SECONDS: int = 60

    def __init__(
        self,
        store: PersistenceStore,
        cache: MetricsCache,
        fanout: Fanout,
        cache_ttl: int = 300,
        retention_hours: int = 24,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the aggregator.

        Args:
            store: Store holding transaction records and metric samples
            cache: Cache for current values
            fanout: Fan-out that receives every computed sample
            cache_ttl: Expiry of cached values in seconds
            retention_hours: Age after which samples are deleted
            clock: Source of the current UTC time
        """
        self.store = store
        self.cache = cache
        self.fanout = fanout
        self.cache_ttl = cache_ttl
        self.retention_hours = retention_hours
        self.clock = clock

        # Metrics tracking
        self.samples_recorded = 0
        self.collection_failures = 0

    async def _emit(
        self, metric_type: MetricType, value: float, block_number: int | None = None
    ) -> MetricSample:
        """Append, cache and publish one computed value."""
        sample = MetricSample(
            metric_type=metric_type,
            value=value,
            block_number=block_number,
            observed_at=self.clock(),
        )
        await self.store.insert_metric(sample)
        self.samples_recorded += 1

        try:
            await self.cache.set_metric(metric_type, value, ttl=self.cache_ttl)
        except Exception as e:
            logger.warning(f"Could not cache {metric_type.value}: {e}")

        self.fanout.publish_metric(sample)
        return sample

    async def compute_tps(self) -> MetricSample:
        """Transactions per second over the trailing TPS window."""
        since = self.clock() - timedelta(seconds=self.TPS_WINDOW_SECONDS)
        tx_count = await self.store.count_transactions_since(since)
        tps = tx_count / self.TPS_WINDOW_SECONDS
        return await self._emit(MetricType.TPS, tps)

    async def compute_error_rate(self) -> MetricSample:
        """Percentage of reverted transactions; 0 for an empty window."""
        since = self.clock() - timedelta(seconds=self.ERROR_RATE_WINDOW_SECONDS)
        total_tx, failed_tx = await self.store.error_counts_since(since)
        error_rate = (failed_tx / total_tx) * 100 if total_tx > 0 else 0.0
        return await self._emit(MetricType.ERROR_RATE, error_rate)

    async def compute_avg_gas(self) -> MetricSample:
        """Mean gas used by transactions with nonzero gas; 0 for an empty window."""
        since = self.clock() - timedelta(seconds=self.GAS_WINDOW_SECONDS)
        avg_gas = await self.store.average_gas_since(since)
        return await self._emit(MetricType.AVG_GAS, avg_gas)

    async def record_latency(self, block: Block, previous: Block | None) -> MetricSample | None:
        """
        Record the time between a block and its predecessor.

        Args:
            block: The block just ingested
            previous: Block ``block.number - 1``, or None if unavailable

        Returns:
            The latency sample, or None when no predecessor was available
        """
        if previous is None or previous.number != block.number - 1:
            logger.debug(f"No predecessor for block {block.number}, latency skipped")
            return None

        latency = float(block.timestamp - previous.timestamp)
        return await self._emit(MetricType.LATENCY, latency, block_number=block.number)

    async def republish_latency(self) -> MetricSample | None:
        """Publish the cached latency so new observers see a value between blocks."""
        latency = await self.cache.get_metric(MetricType.LATENCY)
        if latency is None:
            return None

        sample = MetricSample(
            metric_type=MetricType.LATENCY, value=latency, observed_at=self.clock()
        )
        self.fanout.publish_metric(sample)
        return sample

    async def collect_metrics(self) -> list[MetricSample]:
        """
        Run every scheduled computation concurrently.

        A failing computation is logged and does not affect the others.
        """
        names = ("TPS", "error rate", "gas", "latency")
        results = await asyncio.gather(
            self.compute_tps(),
            self.compute_error_rate(),
            self.compute_avg_gas(),
            self.republish_latency(),
            return_exceptions=True,
        )

        samples: list[MetricSample] = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                self.collection_failures += 1
                logger.error(f"Error collecting {name} metrics: {result}")
            elif result is not None:
                samples.append(result)
        return samples

    async def get_current_metrics(self) -> MetricsSnapshot:
        """Current values from the cache; missing values and outages read as 0."""
        try:
            values = await self.cache.get_all()
        except Exception as e:
            logger.error(f"Error getting current metrics: {e}")
            values = {}

        return MetricsSnapshot(
            tps=values.get(MetricType.TPS) or 0.0,
            error_rate=values.get(MetricType.ERROR_RATE) or 0.0,
            avg_gas=values.get(MetricType.AVG_GAS) or 0.0,
            latency=values.get(MetricType.LATENCY) or 0.0,
            timestamp=self.clock(),
        )

    async def clean_old_metrics(self) -> int:
        """Delete samples older than the retention period."""
        cutoff = self.clock() - timedelta(hours=self.retention_hours)
        removed = await self.store.delete_metrics_before(cutoff)
        logger.info(f"Cleaned {removed} metric samples older than {self.retention_hours}h")
        return removed

    def get_metrics(self) -> dict[str, int]:
        return {
            "samples_recorded": self.samples_recorded,
            "collection_failures": self.collection_failures,
        }
