#!/usr/bin/env python3
"""Configuration management for the DevLab indexer.

This module provides type-safe configuration dataclasses with validation
for the indexer service. Configuration is loaded from environment variables
with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    """Read a boolean flag from the environment."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for the monitored chain.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint
        ws_url: WebSocket RPC endpoint (derived from rpc_url when omitted)
        use_websocket: Subscribe to newHeads instead of polling the head
        polling_interval: Seconds between head polls
        request_timeout: RPC request timeout in seconds
        lookback_blocks: Blocks behind the head to ingest on startup
    """

    rpc_url: str
    ws_url: str | None = None
    use_websocket: bool = False
    polling_interval: float = 2
    request_timeout: int = 30
    lookback_blocks: int = 0

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.rpc_url:
            raise ValueError("Chain RPC URL is required (CHAIN_RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https', 'ws', 'wss'):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. "
                "Expected http, https, ws, or wss"
            )

        if self.ws_url:
            ws_scheme = urlparse(self.ws_url).scheme
            if ws_scheme not in ('ws', 'wss'):
                raise ValueError(
                    f"Invalid WebSocket URL scheme: {ws_scheme}. Expected ws or wss"
                )
        elif self.use_websocket:
            object.__setattr__(self, 'ws_url', self._convert_to_websocket_url(self.rpc_url))

        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.polling_interval > 300:
            raise ValueError(f"Polling interval too long (max 300s), got {self.polling_interval}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.lookback_blocks < 0:
            raise ValueError(f"Lookback blocks must be non-negative, got {self.lookback_blocks}")
        if self.lookback_blocks > 1000:
            raise ValueError(f"Lookback blocks too high (max 1000), got {self.lookback_blocks}")

    @staticmethod
    def _convert_to_websocket_url(http_url: str) -> str:
        """Convert HTTP RPC URL to WebSocket URL."""
        if http_url.startswith("https://"):
            return http_url.replace("https://", "wss://", 1)
        if http_url.startswith("http://"):
            return http_url.replace("http://", "ws://", 1)
        return http_url


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Configuration for the relational store and the metrics cache."""

    database_url: str = "sqlite+aiosqlite:///./devlab.db"
    redis_url: str = "redis://localhost:6379/0"

    def __post_init__(self) -> None:
        """Validate storage configuration."""
        if not self.database_url:
            raise ValueError("Database URL is required (DATABASE_URL)")

        scheme = urlparse(self.database_url).scheme.split('+')[0]
        if scheme not in ('postgresql', 'postgres', 'sqlite'):
            raise ValueError(
                f"Unsupported database scheme: {scheme}. Expected postgresql or sqlite"
            )

        if not self.redis_url:
            raise ValueError("Redis URL is required (REDIS_URL)")

        redis_scheme = urlparse(self.redis_url).scheme
        if redis_scheme not in ('redis', 'rediss', 'unix'):
            raise ValueError(
                f"Invalid Redis URL scheme: {redis_scheme}. Expected redis, rediss, or unix"
            )


@dataclass(frozen=True, slots=True)
class MetricsConfig:
    """Configuration for metric aggregation and retention."""
    collection_interval: int = 10  # seconds between scheduled recomputes
    cleanup_interval: int = 3600  # seconds between retention sweeps
    retention_hours: int = 24
    cache_ttl: int = 300  # seconds, must outlive collection_interval
    task_timeout: int = 30  # max runtime of one scheduled task run

    def __post_init__(self) -> None:
        """Validate metrics configuration."""
        if self.collection_interval <= 0:
            raise ValueError(
                f"Collection interval must be positive, got {self.collection_interval}"
            )
        if self.cleanup_interval <= 0:
            raise ValueError(f"Cleanup interval must be positive, got {self.cleanup_interval}")
        if self.retention_hours <= 0:
            raise ValueError(f"Retention must be positive, got {self.retention_hours}")
        if self.cache_ttl < self.collection_interval:
            raise ValueError(
                f"Cache TTL ({self.cache_ttl}s) must be at least the collection "
                f"interval ({self.collection_interval}s)"
            )
        if self.task_timeout <= 0:
            raise ValueError(f"Task timeout must be positive, got {self.task_timeout}")


@dataclass(frozen=True, slots=True)
class ApiConfig:
    """Configuration for the HTTP/WebSocket server."""
    host: str = "0.0.0.0"
    port: int = 3001
    subscriber_queue_size: int = 1000

    def __post_init__(self) -> None:
        """Validate API configuration."""
        if not 0 < self.port < 65536:
            raise ValueError(f"Invalid API port: {self.port}")
        if self.subscriber_queue_size <= 0:
            raise ValueError(
                f"Subscriber queue size must be positive, got {self.subscriber_queue_size}"
            )


@dataclass(frozen=True, slots=True)
class IndexerConfig:
    """Main configuration for the DevLab indexer.

    Attributes:
        chain: Chain connection and subscription settings
        storage: Database and cache settings
        metrics: Aggregation cadence and retention
        api: HTTP server settings
        contracts: Contract name to address mapping to register at startup
    """

    chain: ChainConfig
    storage: StorageConfig = field(default_factory=StorageConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    contracts: dict[str, str] = field(default_factory=dict)

    # Demo contracts and the environment variables holding their addresses
    CONTRACT_ENV_VARS: ClassVar[dict[str, str]] = {
        "SampleERC20": "SAMPLE_ERC20_ADDRESS",
        "MiniDEX": "MINI_DEX_ADDRESS",
    }

    def __post_init__(self) -> None:
        """Validate contract addresses."""
        for name, address in self.contracts.items():
            if not Web3.is_address(address):
                raise ValueError(f"Invalid address for contract {name}: {address}")

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        """Load configuration from environment variables.

        Returns:
            IndexerConfig instance with loaded values

        Raises:
            ValueError: If environment variables are missing or invalid
        """
        chain_config = ChainConfig(
            rpc_url=os.environ.get("CHAIN_RPC_URL", "https://dream-rpc.somnia.network"),
            ws_url=os.environ.get("CHAIN_WS_URL") or None,
            use_websocket=_env_bool("USE_WEBSOCKET"),
            polling_interval=float(os.environ.get("POLLING_INTERVAL", "2")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
            lookback_blocks=int(os.environ.get("LOOKBACK_BLOCKS", "0")),
        )

        storage_config = StorageConfig(
            database_url=os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./devlab.db"),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
        )

        metrics_config = MetricsConfig(
            collection_interval=int(os.environ.get("METRICS_INTERVAL", "10")),
            cleanup_interval=int(os.environ.get("CLEANUP_INTERVAL", "3600")),
            retention_hours=int(os.environ.get("METRICS_RETENTION_HOURS", "24")),
            cache_ttl=int(os.environ.get("METRICS_CACHE_TTL", "300")),
            task_timeout=int(os.environ.get("TASK_TIMEOUT", "30")),
        )

        api_config = ApiConfig(
            host=os.environ.get("API_HOST", "0.0.0.0"),
            port=int(os.environ.get("API_PORT", "3001")),
            subscriber_queue_size=int(os.environ.get("SUBSCRIBER_QUEUE_SIZE", "1000")),
        )

        contracts = {
            name: address
            for name, env_var in cls.CONTRACT_ENV_VARS.items()
            if (address := os.environ.get(env_var))
        }

        return cls(
            chain=chain_config,
            storage=storage_config,
            metrics=metrics_config,
            api=api_config,
            contracts=contracts,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("DevLab Indexer Configuration")
        logger.info("=" * 60)

        logger.info("Chain:")
        logger.info(f"  RPC URL: {self.chain.rpc_url}")
        if self.chain.use_websocket:
            logger.info(f"  WebSocket URL: {self.chain.ws_url}")
        else:
            logger.info(f"  Polling Interval: {self.chain.polling_interval} seconds")
        logger.info(f"  Request Timeout: {self.chain.request_timeout} seconds")

        logger.info("Storage:")
        logger.info(f"  Database: {_redact(self.storage.database_url)}")
        logger.info(f"  Redis: {_redact(self.storage.redis_url)}")

        logger.info("Metrics:")
        logger.info(f"  Collection Interval: {self.metrics.collection_interval} seconds")
        logger.info(f"  Cleanup Interval: {self.metrics.cleanup_interval} seconds")
        logger.info(f"  Retention: {self.metrics.retention_hours} hours")

        logger.info("API:")
        logger.info(f"  Listen: {self.api.host}:{self.api.port}")

        logger.info("Contracts:")
        if not self.contracts:
            logger.info("  [NONE CONFIGURED]")
        for name, address in self.contracts.items():
            logger.info(f"  {name}: {address}")

        logger.info("=" * 60)


def _redact(url: str) -> str:
    """Hide the password component of a connection URL."""
    parsed = urlparse(url)
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":****@", 1)
