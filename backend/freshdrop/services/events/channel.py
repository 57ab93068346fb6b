"""
Per-order change event channel.

Each order id has an explicit list of subscribers. ``OrderService`` publishes
an ``OrderChangeEvent`` after every committed mutation and each subscriber
receives it on its own bounded queue. A relay, when attached, mirrors local
events to other API processes.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID

from freshdrop.core.logging import get_logger

logger = get_logger(__name__)


class EventKind(str, Enum):
    PLACED = "placed"
    PAYMENT_CONFIRMED = "payment_confirmed"
    CLAIMED = "claimed"
    STEP_COMPLETED = "step_completed"
    CANCELLED = "cancelled"
    RELEASED = "released"


@dataclass(frozen=True)
class OrderChangeEvent:
    """A committed change to one order."""

    order_id: UUID
    kind: EventKind
    status: str
    current_step: int
    step_number: Optional[int] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": str(self.order_id),
            "kind": self.kind.value,
            "status": self.status,
            "current_step": self.current_step,
            "step_number": self.step_number,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderChangeEvent":
        return cls(
            order_id=UUID(data["order_id"]),
            kind=EventKind(data["kind"]),
            status=data["status"],
            current_step=int(data["current_step"]),
            step_number=data.get("step_number"),
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
        )


class EventRelay(Protocol):
    async def publish(self, event: OrderChangeEvent) -> None: ...


class Subscription:
    """One listener on one order's events."""

    def __init__(self, channel: "OrderEventChannel", order_id: UUID, max_queue: int):
        self.channel = channel
        self.order_id = order_id
        self.queue: asyncio.Queue[OrderChangeEvent] = asyncio.Queue(maxsize=max_queue)
        self.dropped = 0

    def offer(self, event: OrderChangeEvent) -> None:
        # Slow consumers lose the oldest event, never block the publisher
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> OrderChangeEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)

    def close(self) -> None:
        self.channel.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class OrderEventChannel:
    """Subscriber registry and fan-out for order change events."""

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._subscribers: Dict[UUID, List[Subscription]] = {}
        self._relay: Optional[EventRelay] = None

    def attach_relay(self, relay: Optional[EventRelay]) -> None:
        self._relay = relay

    def subscribe(self, order_id: UUID) -> Subscription:
        subscription = Subscription(self, order_id, self.max_queue)
        self._subscribers.setdefault(order_id, []).append(subscription)
        logger.debug(
            "Order event subscriber added",
            order_id=str(order_id),
            subscribers=len(self._subscribers[order_id]),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.order_id)
        if not subscribers or subscription not in subscribers:
            return
        subscribers.remove(subscription)
        if not subscribers:
            del self._subscribers[subscription.order_id]

    def subscriber_count(self, order_id: UUID) -> int:
        return len(self._subscribers.get(order_id, ()))

    def deliver(self, event: OrderChangeEvent) -> int:
        """Hand ``event`` to local subscribers only."""
        subscribers = list(self._subscribers.get(event.order_id, ()))
        for subscription in subscribers:
            subscription.offer(event)
        return len(subscribers)

    async def publish(self, event: OrderChangeEvent) -> int:
        """
        Deliver locally and forward to the relay.

        Relay failures are logged; local subscribers already have the event.

        Returns:
            Number of local subscribers reached
        """
        delivered = self.deliver(event)

        if self._relay is not None:
            try:
                await self._relay.publish(event)
            except Exception as e:
                logger.warning(
                    "Order event relay publish failed",
                    order_id=str(event.order_id),
                    error=str(e),
                )

        logger.debug(
            "Order event published",
            order_id=str(event.order_id),
            kind=event.kind.value,
            delivered=delivered,
        )
        return delivered


_channel: Optional[OrderEventChannel] = None


def get_event_channel() -> OrderEventChannel:
    """Process-wide event channel."""
    global _channel
    if _channel is None:
        _channel = OrderEventChannel()
    return _channel
