"""
redis_client.py
---------------
Redis client of the Risk & Refund Engine.

Redis holds two things:
  - the last session snapshot per user (geolocation and fingerprint drift)
  - the notification queue consumed by the notification collaborator

Connection setup:
  - Connection pool with explicit limits
  - Health check on connect: fail fast if Redis is not there
  - Automatic retry with exponential backoff (3 attempts) for network errors
  - decode_responses=False; callers decode JSON payloads explicitly

Usage (risk_engine/main.py lifespan):
    await redis_manager.connect()
    ...
    await redis_manager.disconnect()
"""

import asyncio
import logging

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import BusyLoadingError, ConnectionError, TimeoutError

from risk_engine.core.config import settings
from risk_engine.core.exceptions import CacheUnavailableException

logger = logging.getLogger(__name__)


class RedisManager:
    """
    Owner of the Redis client.

    Pool parameters:
      max_connections=50         → concurrent coroutines waiting for a connection
      socket_timeout=0.5         → max time per read/write
      socket_connect_timeout=2.0 → max time to open a connection
      health_check_interval=30   → pool connections are checked every 30s
    """

    def __init__(self, url: str = settings.REDIS_URL):
        self.url = url
        self.client: redis.Redis | None = None
        self._connected: bool = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self.client is not None

    def get_client(self) -> redis.Redis:
        if self.client is None:
            raise CacheUnavailableException("Redis client is not connected.")
        return self.client

    async def connect(self) -> None:
        """Create the pool and check that Redis answers. Raises if it does not."""
        logger.info(f"[Redis] Connecting to {self.url} ...")

        retry = Retry(
            backoff          = ExponentialBackoff(cap=0.5, base=0.1),
            retries          = 3,
            supported_errors = (ConnectionError, TimeoutError, BusyLoadingError),
        )

        self.client = redis.Redis.from_url(
            self.url,
            max_connections        = 50,
            socket_timeout         = 0.5,
            socket_connect_timeout = 2.0,
            socket_keepalive       = True,
            health_check_interval  = 30,
            retry                  = retry,
            retry_on_timeout       = True,
            decode_responses       = False,
        )

        await self._health_check(raise_on_fail=True)
        self._connected = True
        logger.info("[Redis] Connection established")

    async def disconnect(self) -> None:
        if self.client:
            try:
                await self.client.aclose()
                self._connected = False
                logger.info("[Redis] Connections closed")
            except Exception as e:
                logger.error(f"[Redis] Error closing connections: {e}")

    async def _health_check(self, raise_on_fail: bool = False) -> bool:
        """
        PING with a 2s budget.

        raise_on_fail=True  → raise (startup)
        raise_on_fail=False → return bool (/health)
        """
        try:
            response = await asyncio.wait_for(self.client.ping(), timeout=2.0)
            if response:
                return True
            raise ConnectionError("Redis PING returned False")

        except asyncio.TimeoutError:
            msg = "[Redis] Health check timeout, no answer in 2s"
            logger.error(msg)
            if raise_on_fail:
                raise ConnectionError(msg)
            return False

        except Exception as e:
            logger.error(f"[Redis] Health check failed: {e}")
            if raise_on_fail:
                raise
            return False

    async def ping(self) -> bool:
        if not self.client:
            return False
        return await self._health_check(raise_on_fail=False)


# Singleton
redis_manager = RedisManager()
