"""
Outbound Delivery Queue.

Decouples the HTTP and socket send paths from the messaging gateway: a send
request becomes a row in the delivery_jobs table and a pool of asyncio
workers delivers it with bounded retries.

Architecture:
    1. enqueue() persists a waiting job (text or media)
    2. Each worker atomically claims the next due job (waiting -> active)
    3. The gateway call succeeds -> completed, gateway response stored
    4. The call fails -> waiting again with exponential backoff
       (base * 2^(attempt-1), capped), until max_attempts is reached
    5. Exhausted -> failed, error logged; a linked Message becomes FAILED
       and message_status is broadcast to its chat room

The claim is a conditional UPDATE on the job row, so several worker
processes can share one database without double-processing a job.

Usage:
    python -m workers.delivery_queue

Environment Variables:
    DATABASE_URL: Database connection string
    DELIVERY_CONCURRENCY: Worker tasks per process (default: 5)
    DELIVERY_MAX_ATTEMPTS: Attempts before a job fails (default: 3)
    DELIVERY_BACKOFF_BASE_SECONDS: First retry delay (default: 5)
    DELIVERY_BACKOFF_MAX_SECONDS: Retry delay cap (default: 300)
"""
import asyncio
import logging
import os
import signal
import socket
import sys
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from prometheus_client import start_http_server

from core.config import settings
from core.exceptions import InvalidPayloadError
from db.models import DeliveryJob, DeliveryJobKind, DeliveryJobStatus, MediaType, Message, MessageStatus
from db.repository import Repository
from api.schemas import MessageStatusPayload
from services.broadcaster import Broadcaster
from workers.metrics import (
    delivery_jobs_enqueued_total, delivery_jobs_completed_total, delivery_jobs_failed_total,
    delivery_job_retries_total, delivery_attempt_duration_seconds, update_queue_depth
)

logger = logging.getLogger(__name__)

METRICS_PORT = int(os.getenv("DELIVERY_METRICS_PORT", "9102"))


def backoff_delay(attempts_made: int, base_seconds: float, max_seconds: float) -> float:
    """
    Delay before the next attempt after `attempts_made` failures.

    Args:
        attempts_made: Attempts already performed (>= 1)
        base_seconds: Delay after the first failure
        max_seconds: Upper bound on the delay

    Returns:
        Delay in seconds
    """
    exponent = max(attempts_made - 1, 0)
    return min(base_seconds * (2 ** exponent), max_seconds)


class DeliveryQueue:
    """
    Persistent outbound delivery queue with a bounded asyncio worker pool.

    Database access runs in worker threads so the event loop serving
    sockets is never blocked by a slow query.
    """

    def __init__(
        self,
        session_factory: Callable,
        gateway,
        broadcaster: Optional[Broadcaster] = None,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        concurrency: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
        stall_timeout_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
        worker_name: Optional[str] = None
    ):
        """
        Args:
            session_factory: SQLAlchemy session factory (e.g. SessionLocal)
            gateway: WhatsAppGateway (or any object with send_text/send_media)
            broadcaster: Event sink for message_status on terminal failure
            max_attempts: Attempt ceiling (default: settings.delivery_max_attempts)
            backoff_base_seconds: First retry delay (default: settings)
            backoff_max_seconds: Retry delay cap (default: settings)
            concurrency: Number of worker tasks (default: settings)
            poll_interval_seconds: Idle sleep between claims (default: settings)
            stall_timeout_seconds: Age after which an active job is considered abandoned
            clock: Callable returning the current UTC time (injectable for tests)
            worker_name: Prefix for worker ids (default: hostname:pid)
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.broadcaster = broadcaster
        self.max_attempts = max_attempts or settings.delivery_max_attempts
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else settings.delivery_backoff_base_seconds
        )
        self.backoff_max_seconds = (
            backoff_max_seconds if backoff_max_seconds is not None else settings.delivery_backoff_max_seconds
        )
        self.concurrency = concurrency or settings.delivery_concurrency
        self.poll_interval_seconds = (
            poll_interval_seconds if poll_interval_seconds is not None else settings.delivery_poll_interval_seconds
        )
        self.stall_timeout_seconds = (
            stall_timeout_seconds if stall_timeout_seconds is not None else settings.delivery_stall_timeout_seconds
        )
        self.clock = clock or datetime.utcnow
        self.worker_name = worker_name or f"{socket.gethostname()}:{os.getpid()}"

        self.is_running = False
        self._tasks: List[asyncio.Task] = []

    # Producer side
    def enqueue(
        self,
        kind: DeliveryJobKind,
        target: str,
        payload: Dict[str, Any],
        message_id: Optional[str] = None
    ) -> DeliveryJob:
        """
        Persist a delivery job.

        Args:
            kind: send-text or send-media
            target: Recipient phone number
            payload: Gateway payload ({"message"} or {"url", "mediaType", "caption"})
            message_id: Optional Message this job delivers

        Returns:
            The waiting job

        Raises:
            InvalidPayloadError: If the payload does not match the job kind
        """
        kind = DeliveryJobKind(kind)
        self._validate_payload(kind, target, payload)

        db = self.session_factory()
        try:
            job = Repository(db).create_delivery_job(
                kind=kind,
                target=target,
                payload=payload,
                max_attempts=self.max_attempts,
                message_id=message_id,
                now=self.clock()
            )
        finally:
            db.close()

        delivery_jobs_enqueued_total.labels(kind=kind.value).inc()
        logger.info(f"Enqueued {kind.value} job {job.id} for {target}")
        return job

    def enqueue_text(self, to: str, message: str, message_id: Optional[str] = None) -> DeliveryJob:
        return self.enqueue(DeliveryJobKind.TEXT, to, {"message": message}, message_id=message_id)

    def enqueue_media(
        self,
        to: str,
        url: str,
        media_type: MediaType,
        caption: Optional[str] = None,
        message_id: Optional[str] = None
    ) -> DeliveryJob:
        payload = {"url": url, "mediaType": MediaType(media_type).value, "caption": caption}
        return self.enqueue(DeliveryJobKind.MEDIA, to, payload, message_id=message_id)

    # Observability
    def get_status(self) -> Dict[str, int]:
        """
        Count jobs per status.

        Returns:
            {"waiting", "active", "completed", "failed", "total"}
        """
        db = self.session_factory()
        try:
            counts = Repository(db).count_delivery_jobs_by_status()
        finally:
            db.close()

        update_queue_depth(counts)
        counts["total"] = sum(counts.values())
        return counts

    def get_job(self, job_id: int) -> Optional[DeliveryJob]:
        db = self.session_factory()
        try:
            return Repository(db).get_delivery_job(job_id)
        finally:
            db.close()

    def remove(self, job_id: int) -> bool:
        """
        Remove a job that is not being processed.

        Returns:
            True if removed, False if the job is currently active

        Raises:
            NotFoundError: If the job does not exist
        """
        db = self.session_factory()
        try:
            removed = Repository(db).delete_delivery_job(job_id)
        finally:
            db.close()
        if removed:
            logger.info(f"Removed delivery job {job_id}")
        return removed

    # Consumer side
    async def process_next(self, worker_id: Optional[str] = None) -> Optional[DeliveryJob]:
        """
        Claim and process one due job.

        Args:
            worker_id: Identifier recorded on the claimed job

        Returns:
            The job in its post-attempt state, or None when nothing is due
        """
        job = await asyncio.to_thread(self._claim, worker_id or f"{self.worker_name}/inline")
        if job is None:
            return None
        return await self._process(job)

    async def _process(self, job: DeliveryJob) -> DeliveryJob:
        kind = DeliveryJobKind(job.kind)
        logger.info(f"Processing {kind.value} job {job.id} (attempt {job.attempts_made}/{job.max_attempts})")

        started = time.time()
        try:
            result = await self._dispatch(kind, job.target, job.payload)
        except Exception as e:
            delivery_attempt_duration_seconds.labels(kind=kind.value).observe(time.time() - started)
            job, failed_message = await asyncio.to_thread(self._record_failure, job.id, str(e))
            if failed_message is not None:
                await self._broadcast_failed_message(failed_message)
            return job

        delivery_attempt_duration_seconds.labels(kind=kind.value).observe(time.time() - started)
        job = await asyncio.to_thread(self._record_success, job.id, result)
        return job

    async def _dispatch(self, kind: DeliveryJobKind, target: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if kind == DeliveryJobKind.TEXT:
            return await self.gateway.send_text(target, payload["message"])
        return await self.gateway.send_media(
            target,
            payload["url"],
            MediaType(payload["mediaType"]),
            payload.get("caption")
        )

    def _claim(self, worker_id: str) -> Optional[DeliveryJob]:
        db = self.session_factory()
        try:
            return Repository(db).claim_next_delivery_job(worker_id, self.clock())
        finally:
            db.close()

    def _record_success(self, job_id: int, result: Dict[str, Any]) -> DeliveryJob:
        db = self.session_factory()
        try:
            job = Repository(db).complete_delivery_job(job_id, result, self.clock())
        finally:
            db.close()

        delivery_jobs_completed_total.labels(kind=job.kind.value).inc()
        logger.info(f"Delivery job {job_id} completed after {job.attempts_made} attempt(s)")
        return job

    def _record_failure(self, job_id: int, error: str) -> Tuple[DeliveryJob, Optional[Message]]:
        now = self.clock()
        db = self.session_factory()
        try:
            repository = Repository(db)
            job = repository.get_delivery_job(job_id)

            if job.attempts_made < job.max_attempts:
                delay = backoff_delay(job.attempts_made, self.backoff_base_seconds, self.backoff_max_seconds)
                job = repository.reschedule_delivery_job(job_id, error, now + timedelta(seconds=delay), now)
                delivery_job_retries_total.labels(kind=job.kind.value).inc()
                logger.warning(
                    f"Delivery job {job_id} attempt {job.attempts_made}/{job.max_attempts} failed: {error}; "
                    f"retrying in {delay:.0f}s"
                )
                return job, None

            job = repository.fail_delivery_job(job_id, error, now)
            delivery_jobs_failed_total.labels(kind=job.kind.value).inc()
            logger.error(
                f"Delivery job {job_id} failed permanently after {job.attempts_made} attempts: {error}",
                extra={"job_id": job_id, "target": job.target, "kind": job.kind.value}
            )

            failed_message = None
            if job.message_id:
                failed_message = repository.update_message_status(job.message_id, MessageStatus.FAILED)
                db.refresh(job)
            return job, failed_message
        finally:
            db.close()

    async def _broadcast_failed_message(self, message: Message) -> None:
        if self.broadcaster is None:
            return
        payload = MessageStatusPayload(message_id=message.id, status=message.status).to_payload()
        await self.broadcaster.emit_to_chat(message.chat_id, "message_status", payload)

    # Worker pool
    async def start(self) -> None:
        """Requeue stalled jobs and start the worker tasks."""
        if self.is_running:
            logger.warning("DeliveryQueue already running")
            return

        requeued, failed_messages = await asyncio.to_thread(self._requeue_stalled)
        if requeued:
            logger.warning(f"Requeued {requeued} stalled delivery job(s)")
        for message in failed_messages:
            await self._broadcast_failed_message(message)

        self.is_running = True
        self._tasks = [
            asyncio.create_task(self._worker(f"{self.worker_name}/{index}"))
            for index in range(self.concurrency)
        ]
        logger.info(f"DeliveryQueue started with {self.concurrency} workers")

    async def stop(self) -> None:
        """Cancel worker tasks. A job interrupted mid-attempt is requeued (or failed, on its last attempt) on next start."""
        if not self.is_running:
            return

        self.is_running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("DeliveryQueue stopped")

    async def _worker(self, worker_id: str) -> None:
        while self.is_running:
            try:
                job = await self.process_next(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Worker {worker_id} error: {e}")
                job = None

            if job is None:
                await asyncio.sleep(self.poll_interval_seconds)

    def _requeue_stalled(self) -> Tuple[int, List[Message]]:
        """
        Requeue abandoned jobs; fail the ones that crashed on their last attempt.

        Returns:
            Number of requeued jobs and the linked messages marked FAILED
        """
        now = self.clock()
        cutoff = now - timedelta(seconds=self.stall_timeout_seconds)
        db = self.session_factory()
        try:
            repository = Repository(db)
            requeued = repository.requeue_stalled_delivery_jobs(cutoff)

            failed_messages = []
            for job in repository.fail_exhausted_stalled_delivery_jobs(cutoff, now):
                delivery_jobs_failed_total.labels(kind=job.kind.value).inc()
                logger.error(
                    f"Delivery job {job.id} stalled on its final attempt ({job.attempts_made}/{job.max_attempts})",
                    extra={"job_id": job.id, "target": job.target, "kind": job.kind.value}
                )
                if job.message_id:
                    failed_messages.append(repository.update_message_status(job.message_id, MessageStatus.FAILED))
            for message in failed_messages:
                db.refresh(message)
            return requeued, failed_messages
        finally:
            db.close()

    @staticmethod
    def _validate_payload(kind: DeliveryJobKind, target: str, payload: Dict[str, Any]) -> None:
        if not target:
            raise InvalidPayloadError("Delivery target is required")
        if kind == DeliveryJobKind.TEXT and not payload.get("message"):
            raise InvalidPayloadError("send-text jobs need a message")
        if kind == DeliveryJobKind.MEDIA and not (payload.get("url") and payload.get("mediaType")):
            raise InvalidPayloadError("send-media jobs need url and mediaType")


async def run_worker() -> None:
    """Run a standalone worker process until SIGINT/SIGTERM."""
    from db.database import SessionLocal, init_db
    from services.redis_client import RedisBroadcaster
    from services.whatsapp_gateway import WhatsAppGateway

    init_db()
    gateway = WhatsAppGateway()
    queue = DeliveryQueue(SessionLocal, gateway, broadcaster=RedisBroadcaster())

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    await queue.start()
    try:
        await stop_event.wait()
    finally:
        await queue.stop()
        await gateway.aclose()


def main():
    """Main entry point for the delivery queue worker."""
    from core.logging_config import configure_logging
    configure_logging(
        service_name="crm-chat-delivery-worker",
        level=settings.log_level,
        enable_json=settings.log_json
    )

    start_http_server(METRICS_PORT)
    logger.info(f"Starting delivery worker (concurrency={settings.delivery_concurrency}, metrics port {METRICS_PORT})")

    try:
        asyncio.run(run_worker())
    except Exception as e:
        logger.exception(f"Delivery worker failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
