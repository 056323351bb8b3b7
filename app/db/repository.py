"""
Repository layer for database operations.
Provides high-level methods for contacts, chats, messages, quick replies
and the delivery job store.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload
from db.models import (
    Contact, Chat, Message, QuickReply, DeliveryJob,
    MediaType, MessageDirection, MessageStatus,
    DeliveryJobKind, DeliveryJobStatus
)
from core.exceptions import NotFoundError, InvalidPayloadError


class Repository:
    """Repository class for database operations."""

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    # Contact operations
    def create_contact(
        self,
        phone_number: str,
        name: Optional[str] = None,
        profile_pic: Optional[str] = None,
        lead_id: Optional[str] = None
    ) -> Contact:
        """Create a new contact. The phone number doubles as name when none is given."""
        contact = Contact(
            phone_number=phone_number,
            name=name or phone_number,
            profile_pic=profile_pic,
            lead_id=lead_id
        )
        self.db.add(contact)
        self.db.commit()
        self.db.refresh(contact)
        return contact

    def get_contact_by_id(self, contact_id: str) -> Optional[Contact]:
        """Get contact by ID."""
        return self.db.query(Contact).filter(Contact.id == contact_id).first()

    def get_contact_by_phone_number(self, phone_number: str) -> Optional[Contact]:
        """Get contact by phone number."""
        return self.db.query(Contact).filter(Contact.phone_number == phone_number).first()

    def list_contacts(self) -> List[Contact]:
        """List contacts alphabetically."""
        return self.db.query(Contact).order_by(Contact.name.asc()).all()

    def update_contact(
        self,
        contact_id: str,
        name: Optional[str] = None,
        profile_pic: Optional[str] = None,
        lead_id: Optional[str] = None
    ) -> Contact:
        """Update mutable contact fields. The phone number never changes."""
        contact = self.get_contact_by_id(contact_id)
        if not contact:
            raise NotFoundError(f"Contact {contact_id} not found")
        if name is not None:
            contact.name = name
        if profile_pic is not None:
            contact.profile_pic = profile_pic
        if lead_id is not None:
            contact.lead_id = lead_id
        self.db.commit()
        self.db.refresh(contact)
        return contact

    def get_or_create_contact(self, phone_number: str, name: Optional[str] = None) -> Tuple[Contact, bool]:
        """
        Resolve a contact by phone number, creating it on first sight.

        A concurrent insert of the same number loses on the unique
        constraint and re-reads the winner's row.

        Args:
            phone_number: Sender address
            name: Display name for a new contact (defaults to the address)

        Returns:
            Tuple of (contact, created)
        """
        contact = self.get_contact_by_phone_number(phone_number)
        if contact:
            return contact, False

        try:
            return self.create_contact(phone_number=phone_number, name=name), True
        except IntegrityError:
            self.db.rollback()
            contact = self.get_contact_by_phone_number(phone_number)
            if contact is None:
                raise
            return contact, False

    # Chat operations
    def create_chat(self, contact_id: str, chat_id: Optional[str] = None) -> Chat:
        """Create a new open chat for a contact."""
        chat = Chat(contact_id=contact_id)
        if chat_id:
            chat.id = chat_id
        self.db.add(chat)
        self.db.commit()
        self.db.refresh(chat)
        return chat

    def get_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        """Get chat by ID."""
        return self.db.query(Chat).filter(Chat.id == chat_id).first()

    def list_chats(self, include_archived: bool = False) -> List[Chat]:
        """List chats, most recently active first."""
        query = self.db.query(Chat).options(
            joinedload(Chat.contact),
            joinedload(Chat.last_message)
        )
        if not include_archived:
            query = query.filter(Chat.is_archived.is_(False))
        return query.order_by(Chat.updated_at.desc()).all()

    def get_open_chat_for_contact(self, contact_id: str) -> Optional[Chat]:
        """Get the open (non-archived) chat of a contact."""
        return self.db.query(Chat).filter(
            Chat.contact_id == contact_id,
            Chat.is_archived.is_(False)
        ).order_by(Chat.created_at.asc()).first()

    def get_or_create_open_chat(self, contact_id: str) -> Tuple[Chat, bool]:
        """
        Find-or-create the single open chat of a contact.

        Returns:
            Tuple of (chat, created)
        """
        chat = self.get_open_chat_for_contact(contact_id)
        if chat:
            return chat, False
        return self.create_chat(contact_id), True

    def set_chat_archived(self, chat_id: str, archived: bool = True) -> Chat:
        """Archive or unarchive a chat."""
        chat = self.get_chat_by_id(chat_id)
        if not chat:
            raise NotFoundError(f"Chat {chat_id} not found")
        chat.is_archived = archived
        chat.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(chat)
        return chat

    # Message operations
    def create_message(
        self,
        chat_id: str,
        direction: MessageDirection,
        content: Optional[str] = None,
        media_url: Optional[str] = None,
        media_type: Optional[MediaType] = None,
        status: MessageStatus = MessageStatus.SENT,
        contact_id: Optional[str] = None
    ) -> Message:
        """
        Persist a message and move the chat's last-message pointer to it.

        Both writes happen in one transaction so the pointer never refers
        to a message outside the chat.

        Args:
            chat_id: Owning chat
            direction: INBOUND or OUTBOUND
            content: Text body (optional for media-only messages)
            media_url: Optional media URL
            media_type: Optional media type
            status: Initial delivery status
            contact_id: Expected contact of the chat (validated when given)

        Returns:
            The persisted message

        Raises:
            NotFoundError: If the chat does not exist
            InvalidPayloadError: If contact_id does not match the chat's contact
                or the message has neither content nor media
        """
        chat = self.get_chat_by_id(chat_id)
        if not chat:
            raise NotFoundError(f"Chat {chat_id} not found")
        if contact_id and contact_id != chat.contact_id:
            raise InvalidPayloadError(f"Contact {contact_id} does not belong to chat {chat_id}")
        if not content and not media_url:
            raise InvalidPayloadError("Message needs content or a media URL")

        message = Message(
            chat_id=chat.id,
            contact_id=chat.contact_id,
            content=content,
            media_url=media_url,
            media_type=media_type,
            direction=direction,
            status=status
        )
        self.db.add(message)
        self.db.flush()

        chat.last_message_id = message.id
        chat.updated_at = datetime.utcnow()

        self.db.commit()
        self.db.refresh(message)
        return message

    def get_message_by_id(self, message_id: str) -> Optional[Message]:
        """Get message by ID."""
        return self.db.query(Message).filter(Message.id == message_id).first()

    def list_messages_for_chat(self, chat_id: str, limit: int = 200) -> List[Message]:
        """List messages of a chat in chronological order."""
        return self.db.query(Message).filter(
            Message.chat_id == chat_id
        ).order_by(Message.created_at.asc()).limit(limit).all()

    def update_message_status(self, message_id: str, status: MessageStatus) -> Message:
        """Transition a message to a new delivery status."""
        message = self.get_message_by_id(message_id)
        if not message:
            raise NotFoundError(f"Message {message_id} not found")
        message.status = status
        self.db.commit()
        self.db.refresh(message)
        return message

    # Quick reply operations
    def create_quick_reply(self, title: str, content: str, company_id: str) -> QuickReply:
        """Create a quick reply template."""
        quick_reply = QuickReply(title=title, content=content, company_id=company_id)
        self.db.add(quick_reply)
        self.db.commit()
        self.db.refresh(quick_reply)
        return quick_reply

    def get_quick_reply_by_id(self, quick_reply_id: str) -> Optional[QuickReply]:
        """Get quick reply by ID."""
        return self.db.query(QuickReply).filter(QuickReply.id == quick_reply_id).first()

    def list_quick_replies(self, company_id: str) -> List[QuickReply]:
        """List quick replies of a company."""
        return self.db.query(QuickReply).filter(
            QuickReply.company_id == company_id
        ).order_by(QuickReply.title.asc()).all()

    def update_quick_reply(
        self,
        quick_reply_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None
    ) -> QuickReply:
        """Update a quick reply template."""
        quick_reply = self.get_quick_reply_by_id(quick_reply_id)
        if not quick_reply:
            raise NotFoundError(f"Quick reply {quick_reply_id} not found")
        if title is not None:
            quick_reply.title = title
        if content is not None:
            quick_reply.content = content
        self.db.commit()
        self.db.refresh(quick_reply)
        return quick_reply

    def delete_quick_reply(self, quick_reply_id: str) -> None:
        """Delete a quick reply template."""
        quick_reply = self.get_quick_reply_by_id(quick_reply_id)
        if not quick_reply:
            raise NotFoundError(f"Quick reply {quick_reply_id} not found")
        self.db.delete(quick_reply)
        self.db.commit()

    # Delivery job operations
    def create_delivery_job(
        self,
        kind: DeliveryJobKind,
        target: str,
        payload: Dict[str, Any],
        max_attempts: int,
        message_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> DeliveryJob:
        """Insert a waiting delivery job, eligible immediately."""
        now = now or datetime.utcnow()
        job = DeliveryJob(
            kind=kind,
            target=target,
            payload=payload,
            status=DeliveryJobStatus.WAITING,
            attempts_made=0,
            max_attempts=max_attempts,
            next_attempt_at=now,
            message_id=message_id,
            created_at=now,
            updated_at=now
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def get_delivery_job(self, job_id: int) -> Optional[DeliveryJob]:
        """Get delivery job by ID."""
        return self.db.query(DeliveryJob).filter(DeliveryJob.id == job_id).first()

    def claim_next_delivery_job(self, worker_id: str, now: datetime) -> Optional[DeliveryJob]:
        """
        Atomically claim the next due waiting job for a worker.

        The claim is a conditional UPDATE (waiting -> active) that only
        succeeds for one worker; losers move on to the next candidate.
        The attempt counter is incremented as part of the claim, and a job
        that has used all of its attempts is never claimed again.

        Args:
            worker_id: Identifier of the claiming worker
            now: Current time, jobs with next_attempt_at <= now are due

        Returns:
            The claimed job, or None when nothing is due
        """
        candidates = self.db.query(DeliveryJob.id).filter(
            DeliveryJob.status == DeliveryJobStatus.WAITING,
            DeliveryJob.next_attempt_at <= now
        ).order_by(DeliveryJob.next_attempt_at.asc(), DeliveryJob.id.asc()).limit(10).all()

        for (job_id,) in candidates:
            claimed = self.db.query(DeliveryJob).filter(
                DeliveryJob.id == job_id,
                DeliveryJob.status == DeliveryJobStatus.WAITING,
                DeliveryJob.attempts_made < DeliveryJob.max_attempts
            ).update(
                {
                    DeliveryJob.status: DeliveryJobStatus.ACTIVE,
                    DeliveryJob.attempts_made: DeliveryJob.attempts_made + 1,
                    DeliveryJob.worker_id: worker_id,
                    DeliveryJob.updated_at: now,
                },
                synchronize_session=False
            )
            self.db.commit()
            if claimed == 1:
                return self.get_delivery_job(job_id)
        return None

    def complete_delivery_job(self, job_id: int, result: Optional[Dict[str, Any]], now: datetime) -> DeliveryJob:
        """Mark an active job completed with the gateway response."""
        job = self._require_delivery_job(job_id)
        job.status = DeliveryJobStatus.COMPLETED
        job.result = result
        job.last_error = None
        job.updated_at = now
        job.finished_at = now
        self.db.commit()
        self.db.refresh(job)
        return job

    def reschedule_delivery_job(self, job_id: int, error: str, next_attempt_at: datetime, now: datetime) -> DeliveryJob:
        """Return a failed attempt to the waiting state with a backoff deadline."""
        job = self._require_delivery_job(job_id)
        job.status = DeliveryJobStatus.WAITING
        job.last_error = error
        job.next_attempt_at = next_attempt_at
        job.worker_id = None
        job.updated_at = now
        self.db.commit()
        self.db.refresh(job)
        return job

    def fail_delivery_job(self, job_id: int, error: str, now: datetime) -> DeliveryJob:
        """Mark a job terminally failed."""
        job = self._require_delivery_job(job_id)
        job.status = DeliveryJobStatus.FAILED
        job.last_error = error
        job.updated_at = now
        job.finished_at = now
        self.db.commit()
        self.db.refresh(job)
        return job

    def delete_delivery_job(self, job_id: int) -> bool:
        """
        Remove a job that is not currently being processed.

        Returns:
            True if removed, False if the job is active

        Raises:
            NotFoundError: If the job does not exist
        """
        job = self._require_delivery_job(job_id)
        if job.status == DeliveryJobStatus.ACTIVE:
            return False
        self.db.delete(job)
        self.db.commit()
        return True

    def requeue_stalled_delivery_jobs(self, older_than: datetime) -> int:
        """
        Return jobs stuck in active (crashed worker) to waiting.

        The attempt already counted for the crashed run is kept. Jobs whose
        crashed run was their last attempt are left for
        fail_exhausted_stalled_delivery_jobs.

        Returns:
            Number of jobs requeued
        """
        requeued = self.db.query(DeliveryJob).filter(
            DeliveryJob.status == DeliveryJobStatus.ACTIVE,
            DeliveryJob.updated_at < older_than,
            DeliveryJob.attempts_made < DeliveryJob.max_attempts
        ).update(
            {
                DeliveryJob.status: DeliveryJobStatus.WAITING,
                DeliveryJob.worker_id: None,
                DeliveryJob.next_attempt_at: older_than,
            },
            synchronize_session=False
        )
        self.db.commit()
        return requeued

    def fail_exhausted_stalled_delivery_jobs(self, older_than: datetime, now: datetime) -> List[DeliveryJob]:
        """
        Fail stalled active jobs that have no attempts left.

        Returns:
            The jobs moved to failed
        """
        stalled = self.db.query(DeliveryJob).filter(
            DeliveryJob.status == DeliveryJobStatus.ACTIVE,
            DeliveryJob.updated_at < older_than,
            DeliveryJob.attempts_made >= DeliveryJob.max_attempts
        ).all()

        for job in stalled:
            job.status = DeliveryJobStatus.FAILED
            job.last_error = "stalled"
            job.worker_id = None
            job.updated_at = now
            job.finished_at = now
        self.db.commit()
        return stalled

    def count_delivery_jobs_by_status(self) -> Dict[str, int]:
        """Count jobs per status, with zero for statuses that have none."""
        counts = {status.value: 0 for status in DeliveryJobStatus}
        rows = self.db.query(DeliveryJob.status, func.count(DeliveryJob.id)).group_by(DeliveryJob.status).all()
        for status, count in rows:
            counts[DeliveryJobStatus(status).value] = count
        return counts

    def _require_delivery_job(self, job_id: int) -> DeliveryJob:
        job = self.get_delivery_job(job_id)
        if not job:
            raise NotFoundError(f"Delivery job {job_id} not found")
        return job
