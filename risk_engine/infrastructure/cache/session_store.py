"""
session_store.py
----------------
Last known session per user, kept in Redis.

Key structure:
  session:user:{user_id}:last
    → JSON SessionSnapshot {location, device_fingerprint, user_agent, recorded_at}
    → TTL: SESSION_TTL_DAYS (a user idle for longer is compared against nothing)

The snapshot is overwritten after every fraud analysis, so impossible
travel and fingerprint drift always compare against the previous booking.
"""

import logging
from typing import Optional

from pydantic import ValidationError
from redis.asyncio import Redis

from risk_engine.core.config import settings
from risk_engine.domain.schemas import SessionSnapshot

logger = logging.getLogger(__name__)


class RedisSessionStore:

    LAST_SESSION_KEY = "session:user:{user_id}:last"

    def __init__(self, redis_client: Redis, ttl_days: int = settings.SESSION_TTL_DAYS):
        self.redis       = redis_client
        self.ttl_seconds = ttl_days * 86400

    async def last_session(self, user_id: str) -> Optional[SessionSnapshot]:
        raw = await self.redis.get(self.LAST_SESSION_KEY.format(user_id=user_id))
        if not raw:
            return None
        try:
            return SessionSnapshot.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"[SessionStore] Corrupt snapshot for user {user_id}, ignoring: {e}")
            return None

    async def record_session(self, user_id: str, snapshot: SessionSnapshot) -> None:
        await self.redis.setex(
            self.LAST_SESSION_KEY.format(user_id=user_id),
            self.ttl_seconds,
            snapshot.model_dump_json(),
        )
