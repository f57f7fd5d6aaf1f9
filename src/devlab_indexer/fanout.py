#!/usr/bin/env python3
"""Fan-out of decoded events and metric samples to dashboard sessions.

Every observer owns a bounded queue and an explicit set of filters.
Publishing never awaits an observer: a full queue sheds its oldest
message, so a stalled session cannot hold up the others or the pipeline.
"""

import asyncio
import itertools
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .models import ContractEventRecord, MetricSample

# Get logger for this module
logger = logging.getLogger(__name__)

EVENT_CHANNEL = "event"
METRICS_CHANNEL = "metrics"


@dataclass(frozen=True, slots=True)
class FanoutMessage:
    """A self-contained, timestamped item delivered to an observer."""

    channel: str
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"channel": self.channel, "data": self.data}


class Subscriber:
    """One observer: a filter set plus a bounded delivery queue."""

    def __init__(self, subscriber_id: str, queue_size: int = 1000) -> None:
        """
        Initialize the subscriber.

        Args:
            subscriber_id: Unique identifier of the observer
            queue_size: Maximum number of undelivered messages kept
        """
        self.id = subscriber_id
        self.queue: asyncio.Queue[FanoutMessage] = asyncio.Queue(maxsize=queue_size)
        self.contract_addresses: set[str] = set()
        self.event_names: set[str] = set()
        self.delivered = 0
        self.dropped = 0

    def subscribe(
        self, contract_address: str | None = None, event_types: Iterable[str] | None = None
    ) -> None:
        """Add a contract-address filter and/or event-name filters."""
        if contract_address:
            self.contract_addresses.add(contract_address.lower())
        if event_types:
            self.event_names.update(event_types)

    def unsubscribe(
        self, contract_address: str | None = None, event_types: Iterable[str] | None = None
    ) -> None:
        """Remove a contract-address filter and/or event-name filters."""
        if contract_address:
            self.contract_addresses.discard(contract_address.lower())
        if event_types:
            self.event_names.difference_update(event_types)

    def match_count(self, event: ContractEventRecord) -> int:
        """
        Number of filter kinds the event matches: its contract address, its event name.

        Each matching kind is a separate delivery; an observer filtering on both
        receives the event twice.
        """
        return (
            int(event.contract_address.lower() in self.contract_addresses)
            + int(event.event_name in self.event_names)
        )

    def deliver(self, message: FanoutMessage) -> None:
        """Enqueue without blocking, shedding the oldest message when full."""
        while True:
            try:
                self.queue.put_nowait(message)
                self.delivered += 1
                return
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def get(self) -> FanoutMessage:
        """Wait for the next message."""
        return await self.queue.get()

    def get_nowait(self) -> FanoutMessage:
        return self.queue.get_nowait()

    def pending(self) -> int:
        return self.queue.qsize()

    def get_stats(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "contract_addresses": sorted(self.contract_addresses),
            "event_names": sorted(self.event_names),
            "pending": self.pending(),
            "delivered": self.delivered,
            "dropped": self.dropped,
        }


class Fanout:
    """Registry of observers; publish calls are synchronous and non-blocking."""

    def __init__(self, queue_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[str, Subscriber] = {}
        self._ids = itertools.count(1)

        # Metrics tracking
        self.events_published = 0
        self.metrics_published = 0

    def register(self, subscriber_id: str | None = None, queue_size: int | None = None) -> Subscriber:
        """Create and register a new observer."""
        subscriber_id = subscriber_id or f"subscriber-{next(self._ids)}"
        if subscriber_id in self._subscribers:
            raise ValueError(f"Subscriber {subscriber_id} already registered")

        subscriber = Subscriber(subscriber_id, queue_size or self.queue_size)
        self._subscribers[subscriber_id] = subscriber
        logger.info(f"Client {subscriber_id} connected ({len(self._subscribers)} active)")
        return subscriber

    def unregister(self, subscriber_id: str) -> None:
        """Remove an observer; unknown ids are ignored."""
        if self._subscribers.pop(subscriber_id, None) is not None:
            logger.info(f"Client {subscriber_id} disconnected ({len(self._subscribers)} active)")

    def get(self, subscriber_id: str) -> Subscriber | None:
        return self._subscribers.get(subscriber_id)

    def __len__(self) -> int:
        return len(self._subscribers)

    def publish_event(self, event: ContractEventRecord) -> int:
        """
        Deliver an event once per matching filter of every observer.

        Duplicates across filters are left to the observer.

        Returns:
            Number of deliveries made
        """
        message = FanoutMessage(EVENT_CHANNEL, event.to_dict())
        deliveries = 0
        for subscriber in list(self._subscribers.values()):
            for _ in range(subscriber.match_count(event)):
                subscriber.deliver(message)
                deliveries += 1
        self.events_published += 1
        return deliveries

    def publish_metric(self, sample: MetricSample) -> int:
        """Deliver a metric sample to every observer."""
        message = FanoutMessage(METRICS_CHANNEL, sample.to_dict())
        subscribers = list(self._subscribers.values())
        for subscriber in subscribers:
            subscriber.deliver(message)
        self.metrics_published += 1
        return len(subscribers)

    def get_stats(self) -> dict[str, Any]:
        return {
            "subscribers": len(self._subscribers),
            "events_published": self.events_published,
            "metrics_published": self.metrics_published,
            "dropped": sum(s.dropped for s in self._subscribers.values()),
        }
