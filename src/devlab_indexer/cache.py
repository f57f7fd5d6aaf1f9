"""Redis cache holding the current value of each metric."""

import logging

import redis.asyncio as redis

from .models import MetricType

logger = logging.getLogger(__name__)


class MetricsCache:
    """
    Fast-read store for current metric values.

    Each metric type lives under its own ``current_<type>`` key with an
    expiry, so writers never contend on shared state.
    """

    KEY_PREFIX: str = "current_"

    def __init__(self, client: "redis.Redis", default_ttl: int = 300) -> None:
        """
        Initialize the cache.

        Args:
            client: redis.asyncio client (decode_responses=True)
            default_ttl: Expiry in seconds applied when no TTL is given
        """
        self.client = client
        self.default_ttl = default_ttl

    @classmethod
    def from_url(cls, redis_url: str, default_ttl: int = 300) -> "MetricsCache":
        """Create a cache connected to the given Redis URL."""
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client, default_ttl=default_ttl)

    @classmethod
    def key_for(cls, metric_type: MetricType) -> str:
        return f"{cls.KEY_PREFIX}{metric_type.value}"

    async def ping(self) -> bool:
        """Check connectivity; raises if Redis is unreachable."""
        return bool(await self.client.ping())

    async def set_metric(self, metric_type: MetricType, value: float, ttl: int | None = None) -> None:
        """Store the current value of a metric with an expiry."""
        await self.client.set(self.key_for(metric_type), str(value), ex=ttl or self.default_ttl)

    async def get_metric(self, metric_type: MetricType) -> float | None:
        """
        Read the current value of a metric.

        Returns:
            The cached value, or None if absent, expired or unparsable
        """
        raw = await self.client.get(self.key_for(metric_type))
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            logger.warning(f"Discarding unparsable cached value for {metric_type.value}: {raw!r}")
            return None

    async def get_all(self) -> dict[MetricType, float | None]:
        """Read every metric in one round trip."""
        metric_types = list(MetricType)
        raw_values = await self.client.mget([self.key_for(t) for t in metric_types])

        values: dict[MetricType, float | None] = {}
        for metric_type, raw in zip(metric_types, raw_values):
            try:
                values[metric_type] = float(raw) if raw is not None else None
            except ValueError:
                values[metric_type] = None
        return values

    async def close(self) -> None:
        await self.client.aclose()
