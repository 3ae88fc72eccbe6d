"""
Order Publisher for the Poller

Publishes each committed batch of orders to Redis Pub/Sub so interested
subscribers can react. Delivery is best-effort: the scheduler logs publish
failures and never rolls back the committed batch.

Channel: {REDIS_CHANNEL_ORDERS}:{tenant_id}, e.g. orders:7

Usage:
    from apps.poller.publisher import RedisOrderPublisher

    publisher = RedisOrderPublisher()
    await publisher.publish(7, persisted_orders, revision=105)
    await publisher.close()
"""

import logging
from typing import Optional, Protocol

from utils.config import settings
from utils.mq import RedisPublisher
from utils.schemas import OrdersSyncedEvent, PersistedOrder

logger = logging.getLogger(__name__)


class OrderPublisher(Protocol):
    async def publish(
        self,
        tenant_id: int,
        orders: list[PersistedOrder],
        *,
        revision: Optional[int] = None,
    ) -> None: ...

    async def close(self) -> None: ...


def channel_for(tenant_id: int, prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.REDIS_CHANNEL_ORDERS}:{tenant_id}"


class RedisOrderPublisher:
    """Publishes `orders_synced` events on the tenant's channel."""

    def __init__(
        self,
        publisher: Optional[RedisPublisher] = None,
        channel_prefix: Optional[str] = None,
    ) -> None:
        self.publisher = publisher or RedisPublisher()
        self.channel_prefix = channel_prefix or settings.REDIS_CHANNEL_ORDERS

    async def publish(
        self,
        tenant_id: int,
        orders: list[PersistedOrder],
        *,
        revision: Optional[int] = None,
    ) -> None:
        channel = channel_for(tenant_id, self.channel_prefix)
        event = OrdersSyncedEvent(tenant_id=tenant_id, revision=revision, orders=orders)

        receivers = await self.publisher.publish(channel, event.model_dump(mode="json"))

        logger.info(
            "Published orders event",
            extra={
                "channel": channel,
                "tenant_id": tenant_id,
                "orders": len(orders),
                "receivers": receivers,
                "message_type": event.type,
            },
        )

    async def close(self) -> None:
        await self.publisher.close()


class NullOrderPublisher:
    """Used when PUBLISH_ENABLED is false."""

    async def publish(
        self,
        tenant_id: int,
        orders: list[PersistedOrder],
        *,
        revision: Optional[int] = None,
    ) -> None:
        logger.debug(
            "Publishing disabled, dropping batch",
            extra={"tenant_id": tenant_id, "orders": len(orders)},
        )

    async def close(self) -> None:
        return None


def build_publisher() -> OrderPublisher:
    if settings.PUBLISH_ENABLED:
        return RedisOrderPublisher()
    return NullOrderPublisher()
