"""
Tests for the outbound delivery queue.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.exceptions import InvalidPayloadError, NotFoundError
from db.database import Base
from db.models import DeliveryJobKind, DeliveryJobStatus, MediaType, MessageDirection, MessageStatus
from db.repository import Repository
from workers.delivery_queue import DeliveryQueue, backoff_delay


@pytest.fixture
def queue(session_factory, gateway, broadcaster, clock) -> DeliveryQueue:
    return DeliveryQueue(
        session_factory,
        gateway,
        broadcaster=broadcaster,
        max_attempts=3,
        backoff_base_seconds=5,
        backoff_max_seconds=300,
        concurrency=2,
        poll_interval_seconds=0.01,
        stall_timeout_seconds=120,
        clock=clock,
        worker_name="test-worker"
    )


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed database, so worker threads each get their own connection."""
    engine = create_engine(f"sqlite:///{tmp_path / 'queue.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def threaded_queue(file_session_factory, gateway, broadcaster, clock) -> DeliveryQueue:
    return DeliveryQueue(
        file_session_factory,
        gateway,
        broadcaster=broadcaster,
        concurrency=2,
        poll_interval_seconds=0.01,
        stall_timeout_seconds=120,
        clock=clock,
        worker_name="test-worker"
    )


@pytest.fixture
def outbound_message(test_db, contact_and_chat):
    _, chat = contact_and_chat
    return Repository(test_db).create_message(chat.id, MessageDirection.OUTBOUND, content="Hello there")


class TestBackoff:
    """Tests for the retry delay schedule."""

    @pytest.mark.parametrize("attempts, expected", [(1, 5), (2, 10), (3, 20), (4, 40), (7, 300), (20, 300)])
    def test_exponential_with_cap(self, attempts, expected):
        assert backoff_delay(attempts, 5, 300) == expected


class TestEnqueue:
    """Tests for the producer side."""

    def test_enqueue_text(self, queue, clock):
        job = queue.enqueue_text("5511999990000", "hi")

        assert job.id is not None
        assert job.kind == DeliveryJobKind.TEXT
        assert job.status == DeliveryJobStatus.WAITING
        assert job.attempts_made == 0
        assert job.max_attempts == 3
        assert job.next_attempt_at == clock.now

    def test_enqueue_media_normalizes_type(self, queue):
        job = queue.enqueue_media("5511999990000", "https://cdn.example.com/a.pdf", "DOCUMENT", caption="Invoice")

        assert job.kind == DeliveryJobKind.MEDIA
        assert job.payload == {"url": "https://cdn.example.com/a.pdf", "mediaType": "DOCUMENT", "caption": "Invoice"}

    def test_enqueue_rejects_bad_payload(self, queue):
        with pytest.raises(InvalidPayloadError):
            queue.enqueue(DeliveryJobKind.TEXT, "5511999990000", {})
        with pytest.raises(InvalidPayloadError):
            queue.enqueue(DeliveryJobKind.MEDIA, "5511999990000", {"url": "https://x"})
        with pytest.raises(InvalidPayloadError):
            queue.enqueue_text("", "hi")

    def test_status_counts(self, queue):
        queue.enqueue_text("1", "a")
        queue.enqueue_text("2", "b")

        assert queue.get_status() == {"waiting": 2, "active": 0, "completed": 0, "failed": 0, "total": 2}


class TestProcessing:
    """Tests for the consumer side."""

    @pytest.mark.asyncio
    async def test_success_completes_job(self, queue, gateway_stub):
        job = queue.enqueue_text("5511999990000", "hi")

        processed = await queue.process_next()

        assert processed.id == job.id
        assert processed.status == DeliveryJobStatus.COMPLETED
        assert processed.attempts_made == 1
        assert processed.result == {"key": {"id": "WA-MSG-1"}, "status": "PENDING"}
        assert processed.finished_at is not None

        request = gateway_stub.calls_to("/message/text")[0]
        assert request.headers["apikey"] == "test-key"
        assert request.url.params["instanceName"] == "test"

    @pytest.mark.asyncio
    async def test_media_job_calls_media_endpoint(self, queue, gateway_stub):
        queue.enqueue_media("5511999990000", "https://cdn.example.com/v.mp4", MediaType.VIDEO)

        processed = await queue.process_next()

        assert processed.status == DeliveryJobStatus.COMPLETED
        assert len(gateway_stub.calls_to("/message/media")) == 1

    @pytest.mark.asyncio
    async def test_nothing_due_returns_none(self, queue):
        assert await queue.process_next() is None

    @pytest.mark.asyncio
    async def test_bounded_retry_then_failed(
        self, queue, gateway_stub, clock, test_db, outbound_message, broadcaster
    ):
        """A job failing every attempt is tried exactly max_attempts times, then FAILED."""
        gateway_stub.fail_sends = True
        job = queue.enqueue_text("5511999990000", "Hello there", message_id=outbound_message.id)

        first = await queue.process_next()
        assert first.status == DeliveryJobStatus.WAITING
        assert first.attempts_made == 1
        assert first.next_attempt_at == clock.now + timedelta(seconds=5)
        assert first.last_error

        # Not due yet
        assert await queue.process_next() is None

        clock.advance(5)
        second = await queue.process_next()
        assert second.status == DeliveryJobStatus.WAITING
        assert second.attempts_made == 2
        assert second.next_attempt_at == clock.now + timedelta(seconds=10)

        clock.advance(10)
        third = await queue.process_next()
        assert third.id == job.id
        assert third.status == DeliveryJobStatus.FAILED
        assert third.attempts_made == 3

        clock.advance(3600)
        assert await queue.process_next() is None
        assert len(gateway_stub.calls_to("/message/text")) == 3
        assert queue.get_status()["failed"] == 1

        test_db.expire_all()
        assert Repository(test_db).get_message_by_id(outbound_message.id).status == MessageStatus.FAILED
        assert broadcaster.events == [(
            "chat",
            outbound_message.chat_id,
            "message_status",
            {"messageId": outbound_message.id, "status": "FAILED"}
        )]

    @pytest.mark.asyncio
    async def test_retry_then_success(self, queue, gateway_stub, clock, broadcaster):
        gateway_stub.fail_sends = True
        queue.enqueue_text("5511999990000", "hi")
        await queue.process_next()

        gateway_stub.fail_sends = False
        clock.advance(5)
        processed = await queue.process_next()

        assert processed.status == DeliveryJobStatus.COMPLETED
        assert processed.attempts_made == 2
        assert processed.last_error is None
        assert broadcaster.events == []

    @pytest.mark.asyncio
    async def test_concurrent_workers_claim_once(self, threaded_queue, gateway_stub):
        """Two workers racing for one job deliver it once."""
        threaded_queue.enqueue_text("5511999990000", "only once")

        results = await asyncio.gather(threaded_queue.process_next("w1"), threaded_queue.process_next("w2"))

        assert sum(1 for result in results if result is not None) == 1
        assert len(gateway_stub.calls_to("/message/text")) == 1


class TestJobManagement:
    """Tests for inspection, removal and stall recovery."""

    def test_remove_waiting_job(self, queue):
        job = queue.enqueue_text("1", "a")

        assert queue.remove(job.id) is True
        assert queue.get_job(job.id) is None

    def test_remove_active_job_refused(self, queue, session_factory, clock):
        job = queue.enqueue_text("1", "a")
        db = session_factory()
        try:
            Repository(db).claim_next_delivery_job("w1", clock.now)
        finally:
            db.close()

        assert queue.remove(job.id) is False
        assert queue.get_job(job.id).status == DeliveryJobStatus.ACTIVE

    def test_remove_unknown_job(self, queue):
        with pytest.raises(NotFoundError):
            queue.remove(9999)

    @pytest.mark.asyncio
    async def test_start_requeues_stalled_jobs(self, threaded_queue, file_session_factory, clock):
        """Jobs left active by a crashed worker return to waiting on start."""
        job = threaded_queue.enqueue_text("1", "a")
        db = file_session_factory()
        try:
            Repository(db).claim_next_delivery_job("crashed-worker", clock.now)
        finally:
            db.close()

        clock.advance(600)
        await threaded_queue.start()
        try:
            for _ in range(200):
                if threaded_queue.get_job(job.id).status == DeliveryJobStatus.COMPLETED:
                    break
                await asyncio.sleep(0.01)
        finally:
            await threaded_queue.stop()

        finished = threaded_queue.get_job(job.id)
        assert finished.status == DeliveryJobStatus.COMPLETED
        assert finished.attempts_made == 2

    @pytest.mark.asyncio
    async def test_start_fails_job_stalled_on_final_attempt(
        self, threaded_queue, file_session_factory, gateway_stub, clock, broadcaster
    ):
        """A worker crash during the last attempt fails the job instead of granting an extra attempt."""
        db = file_session_factory()
        try:
            repository = Repository(db)
            contact = repository.create_contact(phone_number="5511999990000")
            chat = repository.create_chat(contact.id)
            message = repository.create_message(chat.id, MessageDirection.OUTBOUND, content="Hello there")
            message_id, chat_id = message.id, chat.id
        finally:
            db.close()

        gateway_stub.fail_sends = True
        job = threaded_queue.enqueue_text("5511999990000", "Hello there", message_id=message_id)
        for _ in range(job.max_attempts - 1):
            await threaded_queue.process_next()
            clock.advance(600)

        db = file_session_factory()
        try:
            crashed = Repository(db).claim_next_delivery_job("crashed-worker", clock.now)
            assert crashed.attempts_made == job.max_attempts
        finally:
            db.close()

        clock.advance(600)
        await threaded_queue.start()
        try:
            assert await threaded_queue.process_next() is None
        finally:
            await threaded_queue.stop()

        failed = threaded_queue.get_job(job.id)
        assert failed.status == DeliveryJobStatus.FAILED
        assert failed.attempts_made == job.max_attempts
        assert failed.last_error == "stalled"
        assert failed.finished_at == clock.now
        assert len(gateway_stub.calls_to("/message/text")) == job.max_attempts - 1

        db = file_session_factory()
        try:
            assert Repository(db).get_message_by_id(message_id).status == MessageStatus.FAILED
        finally:
            db.close()
        assert ("chat", chat_id, "message_status", {"messageId": message_id, "status": "FAILED"}) in broadcaster.events

    def test_second_claim_of_active_job_fails(self, queue, session_factory, clock):
        """The conditional claim only moves a job out of waiting once."""
        queue.enqueue_text("1", "a")
        db = session_factory()
        try:
            repository = Repository(db)
            assert repository.claim_next_delivery_job("w1", clock.now) is not None
            assert repository.claim_next_delivery_job("w2", clock.now) is None
        finally:
            db.close()
