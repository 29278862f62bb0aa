"""
notification_queue.py
---------------------
Hands notification directives to the notification collaborator.

The engine decides who is told what; formatting and delivery (push,
email, in-app) belong to the consumer of the Redis list:

  LPUSH {NOTIFICATION_QUEUE_KEY} <Notification JSON>

Consumers BRPOP from the same key, so delivery order is FIFO.
"""

import logging

from redis.asyncio import Redis

from risk_engine.core.config import settings
from risk_engine.domain.schemas import Notification

logger = logging.getLogger(__name__)


class RedisNotificationQueue:

    def __init__(self, redis_client: Redis, queue_key: str = settings.NOTIFICATION_QUEUE_KEY):
        self.redis     = redis_client
        self.queue_key = queue_key

    async def enqueue(self, notification: Notification) -> None:
        await self.redis.lpush(self.queue_key, notification.model_dump_json())
        logger.debug(
            f"[NotificationQueue] {notification.type} → "
            f"{notification.recipient_id or notification.audience}"
        )
