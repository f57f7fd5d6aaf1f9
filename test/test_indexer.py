#!/usr/bin/env python3
"""Tests for service wiring and startup."""

from unittest.mock import AsyncMock

import pytest

from devlab_indexer.config import ChainConfig, IndexerConfig, StorageConfig
from devlab_indexer.feed import PollingBlockSubscription, WebSocketBlockSubscription
from devlab_indexer.indexer import DevLabIndexer
from devlab_indexer.pipeline import StartupError

from conftest import TOKEN_ADDRESS


@pytest.fixture
def config(tmp_path):
    return IndexerConfig(
        chain=ChainConfig(rpc_url="http://localhost:8545"),
        storage=StorageConfig(database_url=f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}"),
        contracts={"SampleERC20": TOKEN_ADDRESS},
    )


class TestDevLabIndexer:
    """Test suite for DevLabIndexer."""

    def test_polling_mode_wiring(self, config):
        indexer = DevLabIndexer(config)

        assert isinstance(indexer.subscription, PollingBlockSubscription)
        assert indexer.pipeline.subscription is indexer.subscription
        assert len(indexer.registry) == 1

    def test_websocket_mode_wiring(self, tmp_path):
        config = IndexerConfig(
            chain=ChainConfig(rpc_url="http://localhost:8545", use_websocket=True),
            storage=StorageConfig(database_url=f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}"),
        )

        indexer = DevLabIndexer(config)

        assert isinstance(indexer.subscription, WebSocketBlockSubscription)
        assert indexer.subscription.websocket_url == "ws://localhost:8545"

    @pytest.mark.asyncio
    async def test_startup_failure_releases_connections(self, config):
        """A failed startup check closes the cache and store before re-raising."""
        indexer = DevLabIndexer(config)
        indexer.pipeline.start = AsyncMock(side_effect=StartupError("Redis unreachable"))
        indexer.cache.close = AsyncMock()
        indexer.store.close = AsyncMock()
        indexer.server.serve = AsyncMock()

        with pytest.raises(StartupError, match="Redis"):
            await indexer.run()

        indexer.cache.close.assert_awaited_once()
        indexer.store.close.assert_awaited_once()
        indexer.server.serve.assert_not_awaited()
