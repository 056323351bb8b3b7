"""
API endpoint implementations.
Defines the chat REST endpoints (contacts, chats, messages, quick replies)
and the WebSocket endpoint carrying real-time chat events.
"""
import logging
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, WebSocket, WebSocketDisconnect, Query, Response
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.dependencies import (
    get_db, get_current_user, get_chat_service, get_connection_manager, get_delivery_queue
)
from api.metrics import websocket_connections_rejected_total, websocket_events_received_total
from api.schemas import (
    ContactCreate, ContactUpdate, ContactOut,
    ChatCreate, ChatOut, ChatArchiveRequest,
    MessageCreate, MessageOut, MessageStatusUpdate,
    QuickReplyCreate, QuickReplyUpdate, QuickReplyOut,
    ClientEvent, SendMessageEvent, TypingEvent, JoinChatEvent, LeaveChatEvent, PingEvent,
    ConnectedPayload, ErrorPayload, TypingStatusPayload, parse_client_event
)
from api.websocket_manager import ConnectionManager, ConnectionSession
from core.audit_logger import audit_logger
from core.exceptions import AuthenticationError, InvalidPayloadError, NotFoundError
from core.security import authenticate_token
from db.repository import Repository
from services.broadcaster import chat_room
from services.chat_service import ChatService
from workers.delivery_queue import DeliveryQueue

logger = logging.getLogger(__name__)

# Create routers
chat_router = APIRouter(dependencies=[Depends(get_current_user)])
websocket_router = APIRouter()

# Close codes for refused socket handshakes
WS_CLOSE_TOKEN_NOT_PROVIDED = 4001
WS_CLOSE_INVALID_TOKEN = 4003


# Contact Endpoints
@chat_router.get("/contacts", response_model=List[ContactOut])
def list_contacts(db: Session = Depends(get_db)):
    """List all contacts alphabetically."""
    return Repository(db).list_contacts()


@chat_router.get("/contacts/{contact_id}", response_model=ContactOut)
def get_contact(contact_id: str, db: Session = Depends(get_db)):
    contact = Repository(db).get_contact_by_id(contact_id)
    if not contact:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
    return contact


@chat_router.post("/contacts", response_model=ContactOut, status_code=status.HTTP_201_CREATED)
def create_contact(request: ContactCreate, db: Session = Depends(get_db)):
    """
    Create a contact.

    Raises:
        HTTPException: 409 Conflict if the phone number is already registered
    """
    try:
        return Repository(db).create_contact(
            phone_number=request.phone_number,
            name=request.name,
            profile_pic=request.profile_pic,
            lead_id=request.lead_id
        )
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Contact with phone number {request.phone_number} already exists"
        )


@chat_router.put("/contacts/{contact_id}", response_model=ContactOut)
def update_contact(contact_id: str, request: ContactUpdate, db: Session = Depends(get_db)):
    try:
        return Repository(db).update_contact(
            contact_id,
            name=request.name,
            profile_pic=request.profile_pic,
            lead_id=request.lead_id
        )
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")


# Chat Endpoints
@chat_router.get("/chats", response_model=List[ChatOut])
def list_chats(
    include_archived: bool = Query(False, alias="includeArchived"),
    db: Session = Depends(get_db)
):
    """List chats, most recently active first, with contact and last message."""
    return Repository(db).list_chats(include_archived=include_archived)


@chat_router.get("/chats/{chat_id}", response_model=ChatOut)
def get_chat(chat_id: str, db: Session = Depends(get_db)):
    chat = Repository(db).get_chat_by_id(chat_id)
    if not chat:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return chat


@chat_router.post("/chats", response_model=ChatOut)
def open_chat(request: ChatCreate, response: Response, db: Session = Depends(get_db)):
    """
    Find-or-create the open chat of a contact.

    Returns 201 when a chat was created, 200 when the existing open chat is reused.
    """
    repository = Repository(db)
    if not repository.get_contact_by_id(request.contact_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")

    chat, created = repository.get_or_create_open_chat(request.contact_id)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return chat


@chat_router.put("/chats/{chat_id}/archive", response_model=ChatOut)
def archive_chat(chat_id: str, request: Optional[ChatArchiveRequest] = None, db: Session = Depends(get_db)):
    archived = request.is_archived if request is not None else True
    try:
        return Repository(db).set_chat_archived(chat_id, archived)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")


@chat_router.get("/chats/{chat_id}/messages", response_model=List[MessageOut])
def get_chat_messages(chat_id: str, limit: int = Query(200, ge=1, le=1000), db: Session = Depends(get_db)):
    """List messages of a chat in chronological order."""
    repository = Repository(db)
    if not repository.get_chat_by_id(chat_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return repository.list_messages_for_chat(chat_id, limit=limit)


# Message Endpoints
@chat_router.post("/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def create_message(request: MessageCreate, chat_service: ChatService = Depends(get_chat_service)):
    """
    Persist a message sent through the REST fallback and broadcast it to the
    chat room. Gateway delivery is the caller's responsibility on this path.

    Raises:
        HTTPException: 404 if the chat does not exist, 400 if the contact does
            not match the chat or the message is empty
    """
    try:
        return await chat_service.record_message(
            chat_id=request.chat_id,
            content=request.content,
            media_url=request.media_url,
            media_type=request.media_type,
            direction=request.direction,
            status=request.status,
            contact_id=request.contact_id
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidPayloadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@chat_router.patch("/messages/{message_id}/status", response_model=MessageOut)
async def update_message_status(
    message_id: str,
    request: MessageStatusUpdate,
    chat_service: ChatService = Depends(get_chat_service)
):
    """Update a message's delivery status and broadcast message_status to its chat room."""
    try:
        return await chat_service.update_message_status(message_id, request.status)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")


# Quick Reply Endpoints
@chat_router.get("/quick-replies/company/{company_id}", response_model=List[QuickReplyOut])
def list_quick_replies(company_id: str, db: Session = Depends(get_db)):
    return Repository(db).list_quick_replies(company_id)


@chat_router.post("/quick-replies", response_model=QuickReplyOut, status_code=status.HTTP_201_CREATED)
def create_quick_reply(request: QuickReplyCreate, db: Session = Depends(get_db)):
    return Repository(db).create_quick_reply(
        title=request.title,
        content=request.content,
        company_id=request.company_id
    )


@chat_router.put("/quick-replies/{quick_reply_id}", response_model=QuickReplyOut)
def update_quick_reply(quick_reply_id: str, request: QuickReplyUpdate, db: Session = Depends(get_db)):
    try:
        return Repository(db).update_quick_reply(quick_reply_id, title=request.title, content=request.content)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Quick reply not found")


@chat_router.delete("/quick-replies/{quick_reply_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_quick_reply(quick_reply_id: str, db: Session = Depends(get_db)):
    try:
        Repository(db).delete_quick_reply(quick_reply_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Quick reply not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# WebSocket Endpoint
@websocket_router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="JWT access token for authentication"),
    db: Session = Depends(get_db),
    connection_manager: ConnectionManager = Depends(get_connection_manager),
    delivery_queue: DeliveryQueue = Depends(get_delivery_queue)
):
    """
    WebSocket endpoint for real-time chat events.

    Connection Flow:
        1. Client connects with token: ws://api/ws?token={jwt}
        2. Server validates the token before accepting; refusal closes with
           4001 (token not provided) or 4003 (invalid token)
        3. The session joins its user room and receives a "connected" frame
        4. Client joins chat rooms with join_chat and sends events
        5. Disconnect drops every room membership

    Frames are JSON objects {"event": <name>, "data": {...}}.

    Client -> Server:
        - send_message: {"chatId", "message", "mediaUrl"?, "mediaType"?}
        - typing: {"chatId", "isTyping"}
        - join_chat / leave_chat: {"chatId"}
        - ping: {}

    Server -> Client:
        - connected, new_message, typing_status, message_status,
          whatsapp_status, pong
        - error: {"message"} (this connection only)
    """
    client_ip = websocket.client.host if websocket.client else None

    try:
        identity = authenticate_token(token)
    except AuthenticationError as e:
        close_code = WS_CLOSE_TOKEN_NOT_PROVIDED if e.is_missing_token else WS_CLOSE_INVALID_TOKEN
        logger.warning(f"WebSocket refused from {client_ip}: {e}")
        audit_logger.log_socket_auth_failure(client_ip, e.reason)
        websocket_connections_rejected_total.labels(reason=e.reason).inc()
        await websocket.close(code=close_code, reason=str(e))
        return

    session = await connection_manager.connect(websocket, identity)
    audit_logger.log_socket_auth_success(identity.user_id, client_ip, session.session_id)
    chat_service = ChatService(db, connection_manager, delivery_queue)

    try:
        await connection_manager.send_to_session(
            session.session_id,
            "connected",
            ConnectedPayload(
                session_id=session.session_id,
                user_id=identity.user_id,
                rooms=sorted(session.rooms)
            ).to_payload()
        )

        while True:
            raw = await websocket.receive_text()

            try:
                event = parse_client_event(raw)
            except ValidationError as e:
                first_error = e.errors()[0] if e.errors() else {}
                await _send_error(
                    connection_manager, session,
                    f"Invalid event: {first_error.get('msg', 'malformed payload')}"
                )
                continue

            websocket_events_received_total.labels(event=event.event, instance="api").inc()
            await handle_client_event(session, event, connection_manager, chat_service)

    except WebSocketDisconnect:
        logger.info(f"User {identity.user_id} (session {session.session_id}) disconnected from WebSocket")
    finally:
        connection_manager.disconnect(session.session_id)


async def handle_client_event(
    session: ConnectionSession,
    event: ClientEvent,
    connection_manager: ConnectionManager,
    chat_service: ChatService
) -> None:
    """
    Dispatch one validated client event.

    Args:
        session: Originating session
        event: Parsed event
        connection_manager: Registry and broadcaster
        chat_service: Message operations bound to this connection's DB session
    """
    if isinstance(event, JoinChatEvent):
        connection_manager.join_chat(session.session_id, event.data.chat_id)

    elif isinstance(event, LeaveChatEvent):
        connection_manager.leave_chat(session.session_id, event.data.chat_id)

    elif isinstance(event, TypingEvent):
        chat_id = event.data.chat_id
        if not connection_manager.is_member(session.session_id, chat_room(chat_id)):
            await _send_error(connection_manager, session, f"Join chat {chat_id} before sending typing events")
            return
        payload = TypingStatusPayload(
            user_id=session.user_id,
            chat_id=chat_id,
            is_typing=event.data.is_typing
        ).to_payload()
        await connection_manager.emit_to_chat(chat_id, "typing_status", payload, exclude_session_id=session.session_id)

    elif isinstance(event, SendMessageEvent):
        data = event.data
        try:
            await chat_service.send_outbound(
                chat_id=data.chat_id,
                content=data.message,
                media_url=data.media_url,
                media_type=data.media_type
            )
        except Exception as e:
            logger.error(f"Error sending message to chat {data.chat_id} for user {session.user_id}: {e}")
            chat_service.db.rollback()
            await _send_error(connection_manager, session, "Failed to send message")

    elif isinstance(event, PingEvent):
        await connection_manager.send_to_session(
            session.session_id, "pong", {"timestamp": datetime.utcnow().isoformat() + "Z"}
        )


async def _send_error(connection_manager: ConnectionManager, session: ConnectionSession, message: str) -> None:
    await connection_manager.send_to_session(session.session_id, "error", ErrorPayload(message=message).to_payload())
