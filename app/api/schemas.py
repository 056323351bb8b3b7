"""
Pydantic schemas for request/response validation.
Defines the REST data transfer objects (DTOs) and the closed set of
socket events exchanged with clients.

Wire payloads use camelCase keys (chatId, isTyping, mediaUrl); Python
attributes stay snake_case through an alias generator.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional, Literal, Union
from pydantic import BaseModel, Field, ConfigDict, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel
from db.models import MediaType, MessageDirection, MessageStatus, DeliveryJobKind, DeliveryJobStatus


def _normalize_media_type(value: Any) -> Any:
    if isinstance(value, str):
        return value.upper()
    return value


class CamelModel(BaseModel):
    """Base model serializing to camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict with wire (camelCase) keys."""
        return self.model_dump(by_alias=True, mode="json")


# Contact Schemas
class ContactCreate(CamelModel):
    phone_number: str = Field(..., min_length=3, max_length=50, description="Unique phone number")
    name: Optional[str] = Field(None, max_length=255, description="Display name (defaults to phone number)")
    profile_pic: Optional[str] = None
    lead_id: Optional[str] = None


class ContactUpdate(CamelModel):
    name: Optional[str] = Field(None, max_length=255)
    profile_pic: Optional[str] = None
    lead_id: Optional[str] = None


class ContactOut(CamelModel):
    id: str
    name: str
    phone_number: str
    profile_pic: Optional[str] = None
    lead_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# Message Schemas
class MessageOut(CamelModel):
    """Message as returned by REST and carried by new_message events."""
    id: str
    chat_id: str
    contact_id: str
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[MediaType] = None
    direction: MessageDirection
    status: MessageStatus
    created_at: datetime


class MessageCreate(CamelModel):
    """
    Persist a message sent outside the socket path (REST fallback).

    Example:
        ```json
        {"chatId": "c1", "contactId": "k1", "content": "hello"}
        ```
    """
    chat_id: str = Field(..., min_length=1)
    contact_id: Optional[str] = None
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[MediaType] = None
    direction: MessageDirection = MessageDirection.OUTBOUND
    status: MessageStatus = MessageStatus.SENT

    @field_validator("media_type", mode="before")
    @classmethod
    def normalize_media_type(cls, value: Any) -> Any:
        return _normalize_media_type(value)


class MessageStatusUpdate(CamelModel):
    status: MessageStatus


# Chat Schemas
class ChatCreate(CamelModel):
    contact_id: str = Field(..., min_length=1)


class ChatOut(CamelModel):
    id: str
    contact_id: str
    is_archived: bool
    last_message_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    contact: Optional[ContactOut] = None
    last_message: Optional[MessageOut] = None


class ChatArchiveRequest(CamelModel):
    is_archived: bool = True


# Quick Reply Schemas
class QuickReplyCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    company_id: str = Field(..., min_length=1)


class QuickReplyUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    content: Optional[str] = Field(None, min_length=1)


class QuickReplyOut(CamelModel):
    id: str
    title: str
    content: str
    company_id: str
    created_at: datetime
    updated_at: datetime


# WhatsApp gateway Schemas
class SendTextRequest(CamelModel):
    """
    Direct text send. Fields are optional here so a missing field yields
    the 400 "Missing required fields" response instead of a 422.
    """
    to: Optional[str] = None
    message: Optional[str] = None


class SendMediaRequest(CamelModel):
    to: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[str] = None
    media_type: Optional[MediaType] = None

    @field_validator("media_type", mode="before")
    @classmethod
    def normalize_media_type(cls, value: Any) -> Any:
        return _normalize_media_type(value)


class GatewayResponse(BaseModel):
    success: bool = True
    data: Any = None


class QueuedJobResponse(CamelModel):
    job_id: int


class QueueStatus(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    total: int


class DeliveryJobOut(CamelModel):
    id: int
    kind: DeliveryJobKind
    target: str
    payload: Dict[str, Any]
    status: DeliveryJobStatus
    attempts_made: int
    max_attempts: int
    next_attempt_at: datetime
    last_error: Optional[str] = None
    message_id: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None


class WebhookEvent(BaseModel):
    """Inbound gateway event. Only the envelope is validated here."""
    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    instance: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class WebhookResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None


# Socket event payloads (client -> server)
class ChatRoomData(CamelModel):
    chat_id: str = Field(..., min_length=1)


class TypingData(CamelModel):
    chat_id: str = Field(..., min_length=1)
    is_typing: bool


class SendMessageData(CamelModel):
    chat_id: str = Field(..., min_length=1)
    message: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[MediaType] = None

    @field_validator("media_type", mode="before")
    @classmethod
    def normalize_media_type(cls, value: Any) -> Any:
        return _normalize_media_type(value)

    @model_validator(mode="after")
    def require_content(self) -> "SendMessageData":
        if not self.message and not self.media_url:
            raise ValueError("message or mediaUrl is required")
        return self


class SendMessageEvent(BaseModel):
    event: Literal["send_message"]
    data: SendMessageData


class TypingEvent(BaseModel):
    event: Literal["typing"]
    data: TypingData


class JoinChatEvent(BaseModel):
    event: Literal["join_chat"]
    data: ChatRoomData


class LeaveChatEvent(BaseModel):
    event: Literal["leave_chat"]
    data: ChatRoomData


class PingEvent(BaseModel):
    event: Literal["ping"]
    data: Dict[str, Any] = Field(default_factory=dict)


ClientEvent = Annotated[
    Union[SendMessageEvent, TypingEvent, JoinChatEvent, LeaveChatEvent, PingEvent],
    Field(discriminator="event")
]

client_event_adapter = TypeAdapter(ClientEvent)


def parse_client_event(raw: str) -> ClientEvent:
    """
    Parse and validate a raw socket frame.

    Raises:
        pydantic.ValidationError: On malformed JSON, unknown event names
            or payloads that do not match the event's schema
    """
    return client_event_adapter.validate_json(raw)


# Socket event payloads (server -> client)
class TypingStatusPayload(CamelModel):
    user_id: str
    chat_id: str
    is_typing: bool


class MessageStatusPayload(CamelModel):
    message_id: str
    status: MessageStatus


class WhatsAppStatusPayload(CamelModel):
    connected: bool
    state: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ErrorPayload(CamelModel):
    message: str


class ConnectedPayload(CamelModel):
    session_id: str
    user_id: str
    rooms: List[str]
    timestamp: datetime = Field(default_factory=datetime.utcnow)
