"""
Redis pub/sub relay for order change events.

Every API process publishes its local events to one Redis channel and
delivers the events it hears from other processes to its local subscribers.
Messages carry the publishing process's origin id so a process ignores its
own echoes.
"""

import asyncio
import json
import uuid
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from freshdrop.core.config import get_settings
from freshdrop.core.logging import get_logger
from freshdrop.services.events.channel import OrderChangeEvent, OrderEventChannel

logger = get_logger(__name__)

RELAY_CHANNEL = "freshdrop:order-events"


def _sanitize_url(url: str) -> str:
    if "@" in url:
        protocol, rest = url.split("://", 1)
        _, host_part = rest.split("@", 1)
        return f"{protocol}://***@{host_part}"
    return url


class RedisEventRelay:
    """Mirrors an ``OrderEventChannel`` across processes."""

    def __init__(
        self,
        channel: OrderEventChannel,
        url: Optional[str] = None,
        client: Any = None,
        origin: Optional[str] = None,
    ):
        self.channel = channel
        self.url = url or get_settings().redis_url
        self.origin = origin or uuid.uuid4().hex
        self._client = client
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Subscribe to the relay channel and attach to the local channel."""
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)

        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(RELAY_CHANNEL)
        self._listener = asyncio.create_task(self._listen())
        self.channel.attach_relay(self)

        logger.info(
            "Order event relay started",
            url=_sanitize_url(self.url),
            origin=self.origin,
        )

    async def stop(self) -> None:
        self.channel.attach_relay(None)

        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        if self._pubsub is not None:
            await self._pubsub.unsubscribe(RELAY_CHANNEL)
            await self._pubsub.aclose()
            self._pubsub = None

        if self._client is not None:
            await self._client.aclose()
            self._client = None

        logger.info("Order event relay stopped", origin=self.origin)

    async def publish(self, event: OrderChangeEvent) -> None:
        if self._client is None:
            return
        message = json.dumps({**event.to_dict(), "origin": self.origin})
        await self._client.publish(RELAY_CHANNEL, message)

    def handle_message(self, raw: str) -> Optional[OrderChangeEvent]:
        """
        Deliver a relayed message locally.

        Returns:
            The delivered event, or None for echoes and malformed messages
        """
        try:
            data = json.loads(raw)
            if data.get("origin") == self.origin:
                return None
            event = OrderChangeEvent.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Malformed relayed order event", error=str(e))
            return None

        self.channel.deliver(event)
        return event

    async def _listen(self) -> None:
        while True:
            try:
                async for message in self._pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    self.handle_message(message["data"])
            except asyncio.CancelledError:
                raise
            except RedisError as e:
                logger.warning("Order event relay connection lost", error=str(e))
                await asyncio.sleep(1.0)
