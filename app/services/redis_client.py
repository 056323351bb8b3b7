"""
Redis client for cross-process event fan-out.

Worker processes have no sockets of their own; they publish broadcast
envelopes to a Redis channel and the API process relays them to its
connected clients (see api/redis_subscriber.py).
Protected by a circuit breaker so a Redis outage degrades to dropped
(logged) broadcasts instead of stalling workers.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional
from redis import Redis, ConnectionPool
from redis.exceptions import RedisError
import pybreaker

from core.config import settings

logger = logging.getLogger(__name__)


class BreakerLogListener(pybreaker.CircuitBreakerListener):
    """Log circuit breaker state transitions."""

    def state_change(self, cb, old_state, new_state):
        old_name = old_state.name if old_state else None
        if new_state.name == pybreaker.STATE_OPEN:
            logger.warning(f"Circuit breaker {cb.name} opened - Redis unavailable")
        elif new_state.name == pybreaker.STATE_HALF_OPEN:
            logger.info(f"Circuit breaker {cb.name} half-open - testing Redis connection")
        elif new_state.name == pybreaker.STATE_CLOSED and old_name is not None:
            logger.info(f"Circuit breaker {cb.name} closed - Redis restored")


redis_circuit_breaker = pybreaker.CircuitBreaker(
    fail_max=3,  # Open circuit after 3 failures
    reset_timeout=15,  # Try half-open after 15 seconds
    name="redis_client",
    listeners=[BreakerLogListener()]
)

_redis_pool: Optional[ConnectionPool] = None


def get_redis_pool() -> ConnectionPool:
    """
    Get or create the shared Redis connection pool.

    Returns:
        Redis connection pool
    """
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = ConnectionPool.from_url(
            settings.redis_url,
            max_connections=50,
            decode_responses=True
        )
        logger.info(f"Created Redis connection pool: {settings.redis_url}")
    return _redis_pool


def get_redis_client() -> Redis:
    """
    Get a Redis client from the connection pool.

    Returns:
        Redis client instance
    """
    return Redis(connection_pool=get_redis_pool())


class RedisBroadcaster:
    """
    Broadcaster that publishes envelopes to the events channel.

    Envelope format:
        {"target": "user" | "chat" | "all", "id": <user or chat id>,
         "event": <name>, "data": <payload>}

    Return values are the number of subscribers Redis delivered the envelope
    to (API processes), not the number of sockets reached.
    """

    def __init__(self, client: Optional[Redis] = None, channel: Optional[str] = None):
        self.client = client or get_redis_client()
        self.channel = channel or settings.redis_events_channel

    async def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        return await self._send({"target": "user", "id": user_id, "event": event, "data": data})

    async def emit_to_chat(
        self,
        chat_id: str,
        event: str,
        data: Dict[str, Any],
        exclude_session_id: Optional[str] = None
    ) -> int:
        envelope = {"target": "chat", "id": chat_id, "event": event, "data": data}
        if exclude_session_id:
            envelope["excludeSessionId"] = exclude_session_id
        return await self._send(envelope)

    async def emit_to_all(self, event: str, data: Dict[str, Any]) -> int:
        return await self._send({"target": "all", "id": None, "event": event, "data": data})

    async def _send(self, envelope: Dict[str, Any]) -> int:
        try:
            return await asyncio.to_thread(self._publish, json.dumps(envelope))
        except pybreaker.CircuitBreakerError:
            logger.warning(f"Redis circuit open, dropped {envelope['event']} broadcast")
        except RedisError as e:
            logger.error(f"Failed to publish {envelope['event']} broadcast: {e}")
        return 0

    @redis_circuit_breaker
    def _publish(self, message: str) -> int:
        """
        Publish a serialized envelope.

        Raises:
            pybreaker.CircuitBreakerError: If circuit is open (Redis unavailable)
            RedisError: On connection or command failure
        """
        return self.client.publish(self.channel, message)
