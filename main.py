#!/usr/bin/env python3
"""Entry point for the DevLab indexer service.

Loads configuration from the environment (and an optional .env file),
then runs block ingestion, metric aggregation and the dashboard API.
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from devlab_indexer.config import IndexerConfig
from devlab_indexer.indexer import DevLabIndexer
from devlab_indexer.pipeline import StartupError


async def main() -> None:
    """Main entry point for the DevLab indexer.

    Raises:
        SystemExit: On configuration or startup errors
    """
    load_dotenv()

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="DevLab Indexer - Ingest EVM blocks, decode contract events and serve live metrics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  CHAIN_RPC_URL          - HTTP RPC endpoint (default: https://dream-rpc.somnia.network)
  CHAIN_WS_URL           - WebSocket RPC endpoint (derived when USE_WEBSOCKET=true)
  USE_WEBSOCKET          - Subscribe to newHeads instead of polling (default: false)
  POLLING_INTERVAL       - Head polling interval in seconds (default: 2)
  DATABASE_URL           - SQLAlchemy database URL (default: sqlite+aiosqlite:///./devlab.db)
  REDIS_URL              - Redis URL for current metrics (default: redis://localhost:6379/0)
  METRICS_INTERVAL       - Metric collection interval in seconds (default: 10)
  SAMPLE_ERC20_ADDRESS   - SampleERC20 contract to decode
  MINI_DEX_ADDRESS       - MiniDEX contract to decode
  API_HOST / API_PORT    - HTTP server bind address (default: 0.0.0.0:3001)
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)

    logger.info("=== DevLab Indexer Starting ===")
    logger.info("Loading configuration from environment...")

    try:
        config: IndexerConfig = IndexerConfig.from_env()
        logger.info("Configuration loaded successfully")

        indexer: DevLabIndexer = DevLabIndexer(config)
        logger.info("DevLabIndexer instance created, starting main loop...")
        await indexer.run()

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - CHAIN_RPC_URL: HTTP RPC endpoint of the monitored chain")
        logger.error("  - DATABASE_URL: postgresql:// or sqlite:// URL")
        logger.error("  - REDIS_URL: redis:// URL")
        logger.error("  - SAMPLE_ERC20_ADDRESS / MINI_DEX_ADDRESS: valid contract addresses")
        sys.exit(1)

    except StartupError as e:
        logger.error(f"Startup Error: {e}")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
