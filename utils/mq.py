"""
Production-ready Redis Pub/Sub publisher with connection pooling and error handling.
"""

import logging
from typing import Any, Optional

import orjson
import redis.asyncio as redis
from redis.exceptions import ConnectionError, RedisError, TimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from utils.config import settings

logger = logging.getLogger(__name__)


def dumps(message: dict[str, Any]) -> bytes:
    """Serialize a message with orjson; Decimals and other leftovers become strings."""
    return orjson.dumps(message, default=str)


class RedisPublisher:
    """Redis publisher for Pub/Sub events with connection pooling and retries."""

    def __init__(self, redis_url: Optional[str] = None) -> None:
        """Initialize Redis publisher.

        Args:
            redis_url: Redis connection URL, defaults to settings.REDIS_URL
        """
        self.redis_url = redis_url or settings.REDIS_URL
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection with connection pooling."""
        if self.client is None:
            self.client = redis.from_url(
                self.redis_url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                decode_responses=False,  # Handle bytes for orjson
            )

    @retry(
        retry=retry_if_exception_type((RedisError, ConnectionError, TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        """Publish message to Redis channel with retry logic.

        Args:
            channel: Redis channel name
            message: Message payload dict (will be JSON-serialized)

        Returns:
            Number of subscribers that received the message

        Raises:
            redis.RedisError: If publishing fails after retries
        """
        if self.client is None:
            await self.connect()

        return await self.client.publish(channel, dumps(message))

    async def close(self) -> None:
        """Close Redis connection and cleanup resources."""
        if self.client:
            await self.client.aclose()
            self.client = None
