"""
Redis Pub/Sub subscriber relaying worker broadcasts to WebSocket clients.

Standalone delivery workers publish envelopes through RedisBroadcaster; this
subscriber runs inside the API process and forwards each envelope to the
local ConnectionManager.
"""
import logging
import asyncio
import json
from typing import Any, Dict, Optional
from redis import Redis
from redis.client import PubSub

from core.config import settings
from services.redis_client import get_redis_client

logger = logging.getLogger(__name__)


class RedisPubSubSubscriber:
    """
    Redis Pub/Sub listener for the broadcast events channel.

    Redis calls are blocking, so they run in worker threads.
    """

    def __init__(self, connection_manager, client: Optional[Redis] = None, channel: Optional[str] = None):
        """
        Args:
            connection_manager: ConnectionManager to forward events to
            client: Optional Redis client (default: pooled client)
            channel: Channel name (default: settings.redis_events_channel)
        """
        self.redis_client: Redis = client or get_redis_client()
        self.pubsub: PubSub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        self.connection_manager = connection_manager
        self.channel = channel or settings.redis_events_channel
        self.is_running = False
        self._listen_task: Optional[asyncio.Task] = None

    async def start(self):
        """Subscribe to the events channel and start listening in the background."""
        if self.is_running:
            logger.warning("RedisPubSubSubscriber already running")
            return

        await asyncio.to_thread(self.pubsub.subscribe, self.channel)
        self.is_running = True
        self._listen_task = asyncio.create_task(self._listen())
        logger.info(f"RedisPubSubSubscriber listening on {self.channel}")

    async def stop(self):
        """Stop the listener and close the Pub/Sub connection."""
        if not self.is_running:
            return

        self.is_running = False
        if self._listen_task:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass

        await asyncio.to_thread(self.pubsub.unsubscribe, self.channel)
        await asyncio.to_thread(self.pubsub.close)
        logger.info("RedisPubSubSubscriber stopped")

    async def _listen(self):
        while self.is_running:
            try:
                message = await asyncio.to_thread(self.pubsub.get_message, timeout=1.0)
                if message and message.get("type") == "message":
                    await self.handle_envelope(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in Redis Pub/Sub listener: {e}")
                await asyncio.sleep(1)  # Back off on error

    async def handle_envelope(self, raw: Any) -> int:
        """
        Forward one published envelope to local sessions.

        Args:
            raw: JSON string (or already decoded dict) from the channel

        Returns:
            Number of local sessions reached
        """
        try:
            envelope: Dict[str, Any] = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except json.JSONDecodeError:
            logger.error(f"Invalid JSON on channel {self.channel}: {raw!r}")
            return 0

        target = envelope.get("target")
        event = envelope.get("event")
        data = envelope.get("data") or {}

        if target == "chat":
            return await self.connection_manager.emit_to_chat(
                envelope["id"], event, data, envelope.get("excludeSessionId")
            )
        if target == "user":
            return await self.connection_manager.emit_to_user(envelope["id"], event, data)
        if target == "all":
            return await self.connection_manager.emit_to_all(event, data)

        logger.warning(f"Unknown broadcast target: {target}")
        return 0
