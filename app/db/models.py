"""
SQLAlchemy ORM models for the chat delivery database.
Defines Contact, Chat, Message, QuickReply and the DeliveryJob store
backing the outbound delivery queue.
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text,
    Boolean, Enum as SQLEnum, JSON
)
from sqlalchemy.orm import relationship
from db.database import Base


def generate_id() -> str:
    return str(uuid.uuid4())


# ENUM Types
class MediaType(str, enum.Enum):
    """Kind of media attached to a message."""
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    DOCUMENT = "DOCUMENT"


class MessageDirection(str, enum.Enum):
    """INBOUND from the external party, OUTBOUND from an operator."""
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class MessageStatus(str, enum.Enum):
    """Delivery status of a message."""
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


class DeliveryJobKind(str, enum.Enum):
    """Gateway operation a delivery job performs."""
    TEXT = "send-text"
    MEDIA = "send-media"


class DeliveryJobStatus(str, enum.Enum):
    """Lifecycle of a delivery job."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Models
class Contact(Base):
    """External party identified by a unique phone number."""
    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    phone_number = Column(String(50), unique=True, nullable=False, index=True)
    profile_pic = Column(String(1024), nullable=True)
    lead_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    chats = relationship("Chat", back_populates="contact")


class Chat(Base):
    """Conversation thread with exactly one contact."""
    __tablename__ = "chats"

    id = Column(String(36), primary_key=True, default=generate_id)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False, index=True)
    is_archived = Column(Boolean, default=False, nullable=False)
    last_message_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    contact = relationship("Contact", back_populates="chats")
    messages = relationship("Message", back_populates="chat", order_by="Message.created_at")
    last_message = relationship(
        "Message",
        primaryjoin="foreign(Chat.last_message_id) == Message.id",
        viewonly=True,
        uselist=False
    )


class Message(Base):
    """Single inbound or outbound chat message."""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_id)
    chat_id = Column(String(36), ForeignKey("chats.id"), nullable=False, index=True)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False, index=True)
    content = Column(Text, nullable=True)  # Optional for media-only messages
    media_url = Column(String(1024), nullable=True)
    media_type = Column(SQLEnum(MediaType), nullable=True)
    direction = Column(SQLEnum(MessageDirection), nullable=False)
    status = Column(SQLEnum(MessageStatus), default=MessageStatus.SENT, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    chat = relationship("Chat", back_populates="messages")
    contact = relationship("Contact")


class QuickReply(Base):
    """Company-scoped canned response template."""
    __tablename__ = "quick_replies"

    id = Column(String(36), primary_key=True, default=generate_id)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    company_id = Column(String(36), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class DeliveryJob(Base):
    """One outbound gateway send tracked by the delivery queue."""
    __tablename__ = "delivery_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(SQLEnum(DeliveryJobKind, values_callable=lambda kinds: [k.value for k in kinds]), nullable=False)
    target = Column(String(50), nullable=False)  # Recipient phone number
    payload = Column(JSON, nullable=False)
    status = Column(
        SQLEnum(DeliveryJobStatus, values_callable=lambda statuses: [s.value for s in statuses]),
        default=DeliveryJobStatus.WAITING,
        nullable=False,
        index=True
    )
    attempts_made = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    next_attempt_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)  # Gateway response on success
    message_id = Column(String(36), ForeignKey("messages.id"), nullable=True, index=True)
    worker_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)
