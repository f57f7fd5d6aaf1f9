#!/usr/bin/env python3
"""Tests for the HTTP and WebSocket API."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from devlab_indexer.api import create_app, handle_client_message, parse_time_range
from devlab_indexer.fanout import Fanout
from devlab_indexer.models import ContractEventRecord, MetricSample, MetricType

from conftest import ALICE, BOB, NOW, TOKEN_ADDRESS, make_record, tx_hash


@pytest_asyncio.fixture
async def client(store, aggregator, fanout, chain, registry):
    app = create_app(store, aggregator, fanout, feed=chain, registry=registry)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestHelpers:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("30s", timedelta(seconds=30)),
            ("15m", timedelta(minutes=15)),
            ("1h", timedelta(hours=1)),
            ("7d", timedelta(days=7)),
        ],
    )
    def test_parse_time_range(self, value, expected):
        assert parse_time_range(value) == expected

    @pytest.mark.parametrize("value", ["", "1w", "h", "0h", "-1h", "1 hour"])
    def test_parse_time_range_invalid(self, value):
        with pytest.raises(ValueError):
            parse_time_range(value)

    def test_handle_subscribe_and_unsubscribe(self):
        subscriber = Fanout().register()

        reply = handle_client_message(
            subscriber,
            {"action": "subscribe", "contractAddress": TOKEN_ADDRESS, "eventTypes": ["Transfer"]},
        )
        assert reply["status"] == "ok"
        assert reply["contractAddresses"] == [TOKEN_ADDRESS.lower()]
        assert reply["eventTypes"] == ["Transfer"]

        reply = handle_client_message(subscriber, {"action": "unsubscribe", "eventTypes": ["Transfer"]})
        assert reply["eventTypes"] == []
        assert reply["contractAddresses"] == [TOKEN_ADDRESS.lower()]

    @pytest.mark.parametrize(
        "message",
        [
            ["subscribe"],
            {"action": "dance"},
            {"action": "subscribe", "eventTypes": "Transfer"},
            {"action": "subscribe", "contractAddress": 42},
        ],
    )
    def test_handle_invalid_message(self, message):
        reply = handle_client_message(Fanout().register(), message)
        assert reply["status"] == "error"


class TestMetricsEndpoints:
    @pytest.mark.asyncio
    async def test_realtime_defaults_to_zero(self, client):
        response = await client.get("/api/metrics/realtime")

        assert response.status_code == 200
        body = response.json()
        assert body["tps"] == 0.0
        assert body["errorRate"] == 0.0
        assert body["avgGas"] == 0.0
        assert body["latency"] == 0.0
        assert body["timestamp"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_realtime_reads_cache(self, client, cache):
        await cache.set_metric(MetricType.TPS, 2.5)

        response = await client.get("/api/metrics/realtime")

        assert response.json()["tps"] == 2.5

    @pytest.mark.asyncio
    async def test_history(self, client, store):
        now = datetime.now(timezone.utc)
        await store.insert_metric(MetricSample(MetricType.TPS, 1.0, now - timedelta(minutes=10)))
        await store.insert_metric(MetricSample(MetricType.LATENCY, 2.0, now - timedelta(minutes=5)))
        await store.insert_metric(MetricSample(MetricType.TPS, 3.0, now - timedelta(hours=3)))

        response = await client.get("/api/metrics/history", params={"timeRange": "1h"})
        assert response.status_code == 200
        assert [s["type"] for s in response.json()] == ["tps", "latency"]

        response = await client.get(
            "/api/metrics/history", params={"timeRange": "1d", "metricType": "tps"}
        )
        assert [s["value"] for s in response.json()] == [3.0, 1.0]

    @pytest.mark.asyncio
    async def test_history_rejects_bad_time_range(self, client):
        response = await client.get("/api/metrics/history", params={"timeRange": "forever"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_history_rejects_unknown_metric(self, client):
        response = await client.get("/api/metrics/history", params={"metricType": "vibes"})
        assert response.status_code == 422


class TestRecordEndpoints:
    @pytest.mark.asyncio
    async def test_events_filtered_by_contract(self, client, store):
        await store.insert_event(ContractEventRecord(
            contract_address=TOKEN_ADDRESS,
            event_name="Transfer",
            block_number=100,
            transaction_hash=tx_hash(1),
            log_index=0,
            decoded_args={"from": ALICE, "to": BOB, "value": 5},
            observed_at=NOW,
        ))

        response = await client.get("/api/events", params={"contractAddress": TOKEN_ADDRESS.lower()})

        assert response.status_code == 200
        [event] = response.json()
        assert event["eventName"] == "Transfer"
        assert event["args"]["value"] == 5

        response = await client.get("/api/events", params={"eventName": "Approval"})
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_events_limit_bounds(self, client):
        response = await client.get("/api/events", params={"limit": 0})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_transactions_by_block(self, client, store):
        await store.insert_transaction(make_record(1, NOW, block_number=100))
        await store.insert_transaction(make_record(2, NOW, block_number=101))

        response = await client.get("/api/transactions", params={"blockNumber": 101})

        assert [t["transactionHash"] for t in response.json()] == [tx_hash(2)]

    @pytest.mark.asyncio
    async def test_transaction_lookup(self, client, store):
        await store.insert_transaction(make_record(1, NOW))

        response = await client.get(f"/api/transactions/{tx_hash(1)}")
        assert response.status_code == 200
        assert response.json()["from"] == ALICE

        response = await client.get(f"/api/transactions/{tx_hash(2)}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_contracts(self, client):
        response = await client.get("/api/contracts")

        [contract] = response.json()
        assert contract["name"] == "SampleERC20"
        assert contract["address"] == TOKEN_ADDRESS
        assert "Transfer" in contract["events"]


class TestBlockEndpoints:
    @pytest.mark.asyncio
    async def test_latest_block(self, client, chain):
        chain.add_block(100, 1_000)
        chain.add_block(101, 1_002)

        response = await client.get("/api/blocks/latest")

        assert response.status_code == 200
        assert response.json()["number"] == 101

    @pytest.mark.asyncio
    async def test_block_by_number(self, client, chain):
        chain.add_block(100, 1_000)

        assert (await client.get("/api/blocks/100")).json()["timestamp"] == 1_000
        assert (await client.get("/api/blocks/200")).status_code == 404

    @pytest.mark.asyncio
    async def test_block_range(self, client, chain):
        for number in (10, 11, 13):
            chain.add_block(number, 1_000 + number)

        response = await client.get("/api/blocks/range", params={"start": 10, "end": 13})

        assert [b["number"] for b in response.json()] == [10, 11, 13]

    @pytest.mark.asyncio
    async def test_block_range_limits(self, client):
        response = await client.get("/api/blocks/range", params={"start": 0, "end": 100})
        assert response.status_code == 400

        response = await client.get("/api/blocks/range", params={"start": 5, "end": 4})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_blocks_unavailable_without_feed(self, store, aggregator, fanout):
        app = create_app(store, aggregator, fanout)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/blocks/latest")

        assert response.status_code == 503


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"] == {"database": "connected", "redis": "connected", "chain": "connected"}

    @pytest.mark.asyncio
    async def test_degraded_when_redis_down(self, client, cache):
        cache.ping = AsyncMock(side_effect=ConnectionError("redis down"))

        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["services"]["redis"] == "disconnected"


class TestWebSocket:
    def test_subscribe_and_disconnect(self):
        """Each connection is one observer, removed when the socket closes."""
        fanout = Fanout()
        app = create_app(MagicMock(), MagicMock(), fanout)

        with TestClient(app) as client:
            with client.websocket_connect("/ws") as websocket:
                websocket.send_json({"action": "subscribe", "contractAddress": TOKEN_ADDRESS})
                reply = websocket.receive_json()

                assert reply["channel"] == "control"
                assert reply["data"]["status"] == "ok"
                assert len(fanout) == 1

                websocket.send_text("not json")
                assert websocket.receive_json()["data"]["error"] == "Invalid JSON"

        assert len(fanout) == 0
