"""
Gateway Connection Health Monitor.

Polls the messaging gateway's link state on a fixed interval, broadcasts it
to every connected client as whatsapp_status and re-initializes the gateway
instance whenever the link is not open.

There is no backoff and no retry ceiling: the interval is the only throttle
and the loop runs for the lifetime of the process.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from core.config import settings
from api.schemas import WhatsAppStatusPayload
from services.broadcaster import Broadcaster
from workers.metrics import gateway_connected, gateway_health_checks_total, gateway_reinitializations_total

logger = logging.getLogger(__name__)

OPEN_STATE = "open"


class ConnectionMonitor:
    """
    Periodic gateway link check.

    Attributes:
        last_status: Payload of the most recent broadcast (None before the first tick)
    """

    def __init__(self, gateway, broadcaster: Broadcaster, interval_seconds: Optional[float] = None):
        """
        Args:
            gateway: WhatsAppGateway (get_instance_status / initialize)
            broadcaster: Target for whatsapp_status events
            interval_seconds: Seconds between checks (default: settings.health_check_interval_seconds)
        """
        self.gateway = gateway
        self.broadcaster = broadcaster
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.health_check_interval_seconds
        )
        self.last_status: Optional[Dict[str, Any]] = None
        self._check_in_flight = False
        self._task: Optional[asyncio.Task] = None

    async def check_once(self) -> Optional[Dict[str, Any]]:
        """
        Run one health check tick.

        Broadcasts the link state to all clients and, when the state is not
        "open", calls the gateway re-initialization once. A failed status
        call is logged and broadcast as the "error" state; a failed
        re-initialization is only logged.

        Returns:
            The broadcast payload, or None if a previous check is still running
        """
        if self._check_in_flight:
            logger.warning("Previous gateway health check still running, skipping tick")
            return None

        self._check_in_flight = True
        try:
            return await self._check()
        finally:
            self._check_in_flight = False

    async def _check(self) -> Dict[str, Any]:
        try:
            status = await self.gateway.get_instance_status()
            state = (status.get("instance") or {}).get("state") or "disconnected"
            connected = state == OPEN_STATE

            payload = WhatsAppStatusPayload(connected=connected, state=state).to_payload()
            await self._publish(payload)
            gateway_connected.set(1 if connected else 0)
            gateway_health_checks_total.labels(result=OPEN_STATE if connected else "not_open").inc()

        except Exception as e:
            logger.error(f"Error checking WhatsApp connection: {e}")
            gateway_connected.set(0)
            gateway_health_checks_total.labels(result="error").inc()

            payload = WhatsAppStatusPayload(connected=False, state="error", error=str(e)).to_payload()
            await self._publish(payload)
            return payload

        if not connected:
            logger.warning(f"WhatsApp gateway link is {state}, re-initializing")
            gateway_reinitializations_total.inc()
            try:
                await self.gateway.initialize()
            except Exception as e:
                # The observed state was already broadcast this tick
                logger.error(f"Error re-initializing WhatsApp gateway: {e}")

        return payload

    async def _publish(self, payload: Dict[str, Any]) -> None:
        self.last_status = payload
        await self.broadcaster.emit_to_all("whatsapp_status", payload)

    async def run(self) -> None:
        """Check immediately, then every interval until cancelled."""
        logger.info(f"Gateway connection monitor started (interval={self.interval_seconds}s)")
        while True:
            started = datetime.utcnow()
            await self.check_once()
            elapsed = (datetime.utcnow() - started).total_seconds()
            await asyncio.sleep(max(self.interval_seconds - elapsed, 0))

    def start(self) -> asyncio.Task:
        """Start the monitor loop as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Gateway connection monitor stopped")
        self._task = None
