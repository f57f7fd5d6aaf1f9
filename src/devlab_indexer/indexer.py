import asyncio
import logging

import uvicorn

from .api import create_app
from .cache import MetricsCache
from .config import IndexerConfig
from .decoder import EventDecoder
from .fanout import Fanout
from .feed import BlockSubscription, PollingBlockSubscription, Web3ChainFeed, WebSocketBlockSubscription
from .metrics import MetricsAggregator
from .pipeline import IngestionPipeline
from .registry import ContractRegistry
from .store import PersistenceStore

# Get logger for this module
logger = logging.getLogger(__name__)


class DevLabIndexer:
    """
    Wires the chain feed, store, cache, pipeline and API server together
    and runs them until one of them stops.
    """

    def __init__(self, config: IndexerConfig) -> None:
        """
        Build every component from configuration.

        :param config: Indexer configuration object
        """
        self.config = config
        logger.info("Starting DevLabIndexer initialization")

        try:
            self.config.log_config()

            logger.debug("Loading contract registry...")
            self.registry = ContractRegistry.from_config(config.contracts)
            logger.debug(f"Registered {len(self.registry)} contracts")

            logger.debug(f"Connecting chain feed to {config.chain.rpc_url}")
            self.feed = Web3ChainFeed(config.chain.rpc_url, request_timeout=config.chain.request_timeout)
            self.subscription = self._build_subscription()

            logger.debug("Initializing storage...")
            self.store = PersistenceStore(config.storage.database_url)
            self.cache = MetricsCache.from_url(config.storage.redis_url, default_ttl=config.metrics.cache_ttl)

            self.fanout = Fanout(queue_size=config.api.subscriber_queue_size)
            self.aggregator = MetricsAggregator(
                store=self.store,
                cache=self.cache,
                fanout=self.fanout,
                cache_ttl=config.metrics.cache_ttl,
                retention_hours=config.metrics.retention_hours,
            )

            self.pipeline = IngestionPipeline(
                feed=self.feed,
                store=self.store,
                decoder=EventDecoder(self.registry),
                aggregator=self.aggregator,
                fanout=self.fanout,
                subscription=self.subscription,
                cache=self.cache,
                metrics_interval=config.metrics.collection_interval,
                cleanup_interval=config.metrics.cleanup_interval,
                task_timeout=config.metrics.task_timeout,
            )

            self.app = create_app(
                store=self.store,
                aggregator=self.aggregator,
                fanout=self.fanout,
                feed=self.feed,
                registry=self.registry,
                status_provider=self.pipeline,
            )
            self.server = uvicorn.Server(
                uvicorn.Config(
                    self.app,
                    host=config.api.host,
                    port=config.api.port,
                    log_level="warning",
                )
            )

            logger.info(
                f"DevLabIndexer initialized "
                f"({'websocket' if config.chain.use_websocket else 'polling'} mode, "
                f"{len(self.registry)} contracts)"
            )

        except Exception as e:
            logger.error(f"DevLabIndexer initialization failed: {e}")
            logger.error(f"Exception type: {type(e).__name__}", exc_info=True)
            raise

    def _build_subscription(self) -> BlockSubscription:
        chain = self.config.chain
        if chain.use_websocket and chain.ws_url:
            logger.debug(f"Using newHeads subscription at {chain.ws_url}")
            return WebSocketBlockSubscription(chain.ws_url, request_timeout=chain.request_timeout)

        logger.debug(f"Using head polling every {chain.polling_interval} seconds")
        return PollingBlockSubscription(
            self.feed,
            interval=chain.polling_interval,
            lookback_blocks=chain.lookback_blocks,
        )

    async def shutdown(self) -> None:
        """Gracefully stop the API server and pipeline, then release connections."""
        logger.info("Shutting down DevLabIndexer...")
        self.server.should_exit = True
        self.pipeline.request_shutdown()
        await self.pipeline.stop()
        await self._close_connections()
        logger.info("DevLabIndexer shutdown complete")

    async def _close_connections(self) -> None:
        await self.cache.close()
        await self.store.close()

    async def run(self) -> None:
        """
        Run ingestion and the API server until either stops.

        Raises:
            StartupError: If the database, Redis or chain is unreachable
        """
        logger.info("Starting DevLabIndexer...")

        # Surfaces StartupError before the server binds
        try:
            await self.pipeline.start()
        except Exception:
            await self._close_connections()
            raise

        pipeline_task = asyncio.create_task(self.pipeline.run(), name="pipeline")
        server_task = asyncio.create_task(self.server.serve(), name="api-server")
        logger.info(f"API listening on {self.config.api.host}:{self.config.api.port}")

        try:
            done, _ = await asyncio.wait(
                {pipeline_task, server_task}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(f"{task.get_name()} failed: {task.exception()}")
        finally:
            logger.info("Cleaning up...")
            await self.shutdown()
            _, pending = await asyncio.wait({pipeline_task, server_task}, timeout=10)
            for task in pending:
                task.cancel()
            logger.info("DevLabIndexer stopped")
