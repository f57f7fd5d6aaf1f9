#!/usr/bin/env python3
"""HTTP and WebSocket surface consumed by the dashboard.

REST endpoints serve current metrics, metric history, decoded events,
transaction replay and block lookups. The ``/ws`` endpoint registers a
fan-out observer per connection and streams matching events and every
metric sample to it.
"""

import asyncio
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .fanout import Fanout, FanoutMessage, Subscriber
from .feed import ChainFeed
from .metrics import MetricsAggregator
from .models import MetricType
from .registry import ContractRegistry
from .store import PersistenceStore

# Get logger for this module
logger = logging.getLogger(__name__)

MAX_BLOCK_RANGE = 100
MAX_QUERY_LIMIT = 1000

_TIME_RANGE_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_TIME_RANGE_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_time_range(value: str) -> timedelta:
    """
    Parse a compact time range such as ``30m`` or ``1h``.

    Raises:
        ValueError: If the value is malformed or not positive
    """
    match = _TIME_RANGE_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid time range: {value!r} (expected e.g. 30s, 15m, 1h, 7d)")
    amount, unit = int(match.group(1)), match.group(2)
    if amount <= 0:
        raise ValueError(f"Time range must be positive, got {value!r}")
    return timedelta(**{_TIME_RANGE_UNITS[unit]: amount})


def handle_client_message(subscriber: Subscriber, message: Any) -> dict[str, Any]:
    """
    Apply one client control message to a subscriber.

    Returns:
        Acknowledgement payload sent back to the client
    """
    if not isinstance(message, dict):
        return {"status": "error", "error": "Message must be a JSON object"}

    action = message.get("action")
    contract_address = message.get("contractAddress")
    event_types = message.get("eventTypes") or []

    if contract_address is not None and not isinstance(contract_address, str):
        return {"status": "error", "error": "contractAddress must be a string"}
    if not isinstance(event_types, list) or not all(isinstance(e, str) for e in event_types):
        return {"status": "error", "error": "eventTypes must be a list of strings"}

    match action:
        case "subscribe":
            subscriber.subscribe(contract_address, event_types)
        case "unsubscribe":
            subscriber.unsubscribe(contract_address, event_types)
        case "ping":
            return {"status": "ok", "action": "pong"}
        case _:
            return {"status": "error", "error": f"Unknown action: {action!r}"}

    logger.debug(f"Client {subscriber.id} {action}d: {subscriber.get_stats()}")
    return {
        "status": "ok",
        "action": action,
        "contractAddresses": sorted(subscriber.contract_addresses),
        "eventTypes": sorted(subscriber.event_names),
    }


def _require_feed(request: Request) -> ChainFeed:
    feed = request.app.state.feed
    if feed is None:
        raise HTTPException(status_code=503, detail="Chain feed not available")
    return feed


async def _forward_messages(websocket: WebSocket, subscriber: Subscriber) -> None:
    """Drain the subscriber's queue onto the socket."""
    while True:
        message = await subscriber.get()
        await websocket.send_json(message.to_dict())


def create_app(
    store: PersistenceStore,
    aggregator: MetricsAggregator,
    fanout: Fanout,
    feed: ChainFeed | None = None,
    registry: ContractRegistry | None = None,
    status_provider: Any = None,
) -> FastAPI:
    """
    Build the FastAPI application around already-constructed components.

    Args:
        store: Persistence store queried by the REST endpoints
        aggregator: Source of current metric values
        fanout: Fan-out that WebSocket sessions register with
        feed: Chain feed for block lookups (block endpoints return 503 without it)
        registry: Registered contracts
        status_provider: Object with ``get_status()`` reported by /health
    """
    app = FastAPI(title="DevLab Indexer", version="0.1.0")
    app.state.store = store
    app.state.aggregator = aggregator
    app.state.fanout = fanout
    app.state.feed = feed
    app.state.registry = registry if registry is not None else ContractRegistry()
    app.state.status_provider = status_provider

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Error handling {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        services: dict[str, str] = {}

        try:
            await request.app.state.store.ping()
            services["database"] = "connected"
        except Exception as e:
            logger.warning(f"Health check: database unreachable: {e}")
            services["database"] = "disconnected"

        try:
            await request.app.state.aggregator.cache.ping()
            services["redis"] = "connected"
        except Exception as e:
            logger.warning(f"Health check: Redis unreachable: {e}")
            services["redis"] = "disconnected"

        if request.app.state.feed is not None:
            try:
                await request.app.state.feed.latest_block_number()
                services["chain"] = "connected"
            except Exception as e:
                logger.warning(f"Health check: chain unreachable: {e}")
                services["chain"] = "disconnected"

        healthy = all(state == "connected" for state in services.values())
        body: dict[str, Any] = {
            "status": "healthy" if healthy else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": services,
            "subscribers": len(request.app.state.fanout),
        }
        if request.app.state.status_provider is not None:
            body["pipeline"] = request.app.state.status_provider.get_status()
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    @app.get("/api/metrics/realtime")
    async def realtime_metrics(request: Request) -> dict[str, Any]:
        snapshot = await request.app.state.aggregator.get_current_metrics()
        return snapshot.to_dict()

    @app.get("/api/metrics/history")
    async def metrics_history(
        request: Request,
        time_range: str = Query("1h", alias="timeRange"),
        metric_type: MetricType | None = Query(None, alias="metricType"),
    ) -> list[dict[str, Any]]:
        try:
            window = parse_time_range(time_range)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        since = datetime.now(timezone.utc) - window
        samples = await request.app.state.store.get_metric_history(since, metric_type)
        return [sample.to_dict() for sample in samples]

    @app.get("/api/events")
    async def contract_events(
        request: Request,
        contract_address: str | None = Query(None, alias="contractAddress"),
        event_name: str | None = Query(None, alias="eventName"),
        block_number: int | None = Query(None, alias="blockNumber", ge=0),
        limit: int = Query(100, ge=1, le=MAX_QUERY_LIMIT),
    ) -> list[dict[str, Any]]:
        events = await request.app.state.store.get_events(
            contract_address=contract_address,
            event_name=event_name,
            block_number=block_number,
            limit=limit,
        )
        return [event.to_dict() for event in events]

    @app.get("/api/transactions")
    async def transactions(
        request: Request,
        block_number: int | None = Query(None, alias="blockNumber", ge=0),
        limit: int = Query(100, ge=1, le=MAX_QUERY_LIMIT),
    ) -> list[dict[str, Any]]:
        records = await request.app.state.store.get_transactions(block_number, limit=limit)
        return [record.to_dict() for record in records]

    @app.get("/api/transactions/{tx_hash}")
    async def transaction(request: Request, tx_hash: str) -> dict[str, Any]:
        record = await request.app.state.store.get_transaction(tx_hash.lower())
        if record is None:
            raise HTTPException(status_code=404, detail=f"Transaction {tx_hash} not found")
        return record.to_dict()

    @app.get("/api/blocks/latest")
    async def latest_block(request: Request) -> dict[str, Any]:
        feed = _require_feed(request)
        number = await feed.latest_block_number()
        block = await feed.get_block(number, full_transactions=True)
        if block is None:
            raise HTTPException(status_code=404, detail=f"Block {number} not found")
        return block.to_dict()

    @app.get("/api/blocks/range")
    async def block_range(
        request: Request,
        start: int = Query(..., ge=0),
        end: int = Query(..., ge=0),
    ) -> list[dict[str, Any]]:
        if end < start:
            raise HTTPException(status_code=400, detail="end must not be before start")
        if end - start + 1 > MAX_BLOCK_RANGE:
            raise HTTPException(
                status_code=400, detail=f"Range too large (max {MAX_BLOCK_RANGE} blocks)"
            )

        feed = _require_feed(request)
        blocks = await asyncio.gather(
            *(feed.get_block(n, full_transactions=True) for n in range(start, end + 1))
        )
        return [block.to_dict() for block in blocks if block is not None]

    @app.get("/api/blocks/{block_number}")
    async def block_by_number(request: Request, block_number: int) -> dict[str, Any]:
        if block_number < 0:
            raise HTTPException(status_code=400, detail="Block number must be non-negative")
        feed = _require_feed(request)
        block = await feed.get_block(block_number, full_transactions=True)
        if block is None:
            raise HTTPException(status_code=404, detail=f"Block {block_number} not found")
        return block.to_dict()

    @app.get("/api/contracts")
    async def contracts(request: Request) -> list[dict[str, Any]]:
        return [registration.to_dict() for registration in request.app.state.registry]

    @app.websocket("/ws")
    async def event_stream(websocket: WebSocket) -> None:
        await websocket.accept()
        subscriber = websocket.app.state.fanout.register()
        pump = asyncio.create_task(_forward_messages(websocket, subscriber))

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    reply = {"status": "error", "error": "Invalid JSON"}
                else:
                    reply = handle_client_message(subscriber, message)
                # Replies share the queue so the pump remains the only writer
                subscriber.deliver(FanoutMessage("control", reply))
        except WebSocketDisconnect:
            pass
        finally:
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Client {subscriber.id} stream closed: {e}")
            websocket.app.state.fanout.unregister(subscriber.id)

    return app
