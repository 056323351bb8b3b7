"""
Chat message flow: outbound sends, inbound webhook ingestion and status
transitions.

Every operation persists first and broadcasts afterwards, so a client that
receives an event can always fetch the message it references.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from api.metrics import messages_created_total, webhook_events_total
from api.schemas import MessageOut, MessageStatusPayload, WebhookEvent
from core.exceptions import InvalidPayloadError, NotFoundError
from db.models import MediaType, Message, MessageDirection, MessageStatus
from db.repository import Repository
from services.broadcaster import Broadcaster

logger = logging.getLogger(__name__)

MESSAGE_UPSERT_EVENT = "messages.upsert"


@dataclass
class InboundMessage:
    """Normalized inbound message extracted from a webhook payload."""
    sender: str
    body: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[MediaType] = None


def _parse_media_type(value: Any) -> Optional[MediaType]:
    if not value:
        return None
    try:
        return MediaType(str(value).upper())
    except ValueError:
        return MediaType.DOCUMENT


def extract_inbound_message(data: Dict[str, Any]) -> Optional[InboundMessage]:
    """
    Extract sender and content from a messages.upsert payload.

    Accepts the flat form ({"from", "body", "mediaUrl", "mediaType"}) and the
    Baileys-shaped form ({"key": {"remoteJid", "fromMe"}, "message": {...}}).

    Args:
        data: The event's data object

    Returns:
        The inbound message, or None for echoes of our own outbound messages

    Raises:
        InvalidPayloadError: If the sender or the content is missing
    """
    key = data.get("key") if isinstance(data.get("key"), dict) else None

    if data.get("from"):
        inbound = InboundMessage(
            sender=str(data["from"]),
            body=data.get("body"),
            media_url=data.get("mediaUrl"),
            media_type=_parse_media_type(data.get("mediaType"))
        )
    elif key and key.get("remoteJid"):
        if key.get("fromMe"):
            return None
        message = data.get("message") or {}
        inbound = InboundMessage(
            sender=str(key["remoteJid"]).split("@")[0],
            body=message.get("conversation") or (message.get("extendedTextMessage") or {}).get("text")
        )
    else:
        raise InvalidPayloadError("Webhook message has no sender")

    if not inbound.body and not inbound.media_url:
        raise InvalidPayloadError(f"Webhook message from {inbound.sender} has no content")
    return inbound


class ChatService:
    """
    Message operations shared by the socket handler, REST routes and webhook.

    Args:
        db: Database session for the current request or connection
        broadcaster: Event sink (ConnectionManager in the API process)
        delivery_queue: Optional queue for gateway delivery of socket sends
    """

    def __init__(self, db: Session, broadcaster: Broadcaster, delivery_queue=None):
        self.db = db
        self.repository = Repository(db)
        self.broadcaster = broadcaster
        self.delivery_queue = delivery_queue

    async def send_outbound(
        self,
        chat_id: str,
        content: Optional[str],
        media_url: Optional[str] = None,
        media_type: Optional[MediaType] = None
    ) -> Message:
        """
        Socket send path: persist an OUTBOUND message, broadcast it to the
        chat room, then queue gateway delivery to the chat's contact. If
        queueing fails the message is marked FAILED (and message_status
        broadcast) rather than the send reported as failed.

        Raises:
            NotFoundError: If the chat does not exist
        """
        chat = self.repository.get_chat_by_id(chat_id)
        if not chat:
            raise NotFoundError(f"Chat {chat_id} not found")

        message = self.repository.create_message(
            chat_id=chat.id,
            direction=MessageDirection.OUTBOUND,
            content=content,
            media_url=media_url,
            media_type=media_type,
            status=MessageStatus.SENT
        )
        messages_created_total.labels(direction=MessageDirection.OUTBOUND.value, source="socket").inc()

        await self.broadcast_new_message(message)

        if self.delivery_queue is not None:
            try:
                self._queue_delivery(chat.contact.phone_number, message)
            except Exception as e:
                # Already persisted and broadcast; surface the failure on the message
                logger.error(f"Failed to queue delivery of message {message.id}: {e}")
                message = await self.update_message_status(message.id, MessageStatus.FAILED)
        return message

    async def record_message(
        self,
        chat_id: str,
        content: Optional[str] = None,
        media_url: Optional[str] = None,
        media_type: Optional[MediaType] = None,
        direction: MessageDirection = MessageDirection.OUTBOUND,
        status: MessageStatus = MessageStatus.SENT,
        contact_id: Optional[str] = None
    ) -> Message:
        """
        REST persistence path (used after a direct gateway send): persist the
        message and broadcast it. Gateway delivery already happened, so
        nothing is queued.
        """
        message = self.repository.create_message(
            chat_id=chat_id,
            direction=direction,
            content=content,
            media_url=media_url,
            media_type=media_type,
            status=status,
            contact_id=contact_id
        )
        messages_created_total.labels(direction=direction.value, source="rest").inc()

        await self.broadcast_new_message(message)
        return message

    async def update_message_status(self, message_id: str, status: MessageStatus) -> Message:
        """Persist a status transition and broadcast message_status to the chat room."""
        message = self.repository.update_message_status(message_id, status)
        payload = MessageStatusPayload(message_id=message.id, status=message.status).to_payload()
        await self.broadcaster.emit_to_chat(message.chat_id, "message_status", payload)
        return message

    async def process_webhook(self, event: WebhookEvent) -> Optional[Message]:
        """
        Ingest a gateway webhook event.

        Only messages.upsert events are processed; any other kind is a
        successful no-op with no writes.

        Returns:
            The persisted inbound message, or None for ignored events

        Raises:
            InvalidPayloadError: If an upsert event has no sender or content
        """
        if event.event != MESSAGE_UPSERT_EVENT:
            webhook_events_total.labels(event=event.event or "unknown", result="ignored").inc()
            logger.debug(f"Ignoring webhook event {event.event}")
            return None

        inbound = extract_inbound_message(event.data or {})
        if inbound is None:
            webhook_events_total.labels(event=MESSAGE_UPSERT_EVENT, result="ignored").inc()
            return None

        contact, contact_created = self.repository.get_or_create_contact(inbound.sender)
        chat, chat_created = self.repository.get_or_create_open_chat(contact.id)
        if contact_created or chat_created:
            logger.info(
                f"Webhook from {inbound.sender}: contact {'created' if contact_created else 'reused'}, "
                f"chat {'created' if chat_created else 'reused'} ({chat.id})"
            )

        message = self.repository.create_message(
            chat_id=chat.id,
            direction=MessageDirection.INBOUND,
            content=inbound.body,
            media_url=inbound.media_url,
            media_type=inbound.media_type,
            status=MessageStatus.DELIVERED
        )
        messages_created_total.labels(direction=MessageDirection.INBOUND.value, source="webhook").inc()
        webhook_events_total.labels(event=MESSAGE_UPSERT_EVENT, result="processed").inc()

        await self.broadcast_new_message(message)
        return message

    async def broadcast_new_message(self, message: Message) -> int:
        payload = MessageOut.model_validate(message).to_payload()
        return await self.broadcaster.emit_to_chat(message.chat_id, "new_message", payload)

    def _queue_delivery(self, phone_number: str, message: Message) -> None:
        if message.media_url and message.media_type:
            self.delivery_queue.enqueue_media(
                phone_number,
                message.media_url,
                message.media_type,
                caption=message.content,
                message_id=message.id
            )
        else:
            self.delivery_queue.enqueue_text(
                phone_number,
                message.content or message.media_url,
                message_id=message.id
            )
