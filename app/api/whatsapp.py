"""
WhatsApp gateway endpoints.

Receives inbound webhook events from the gateway, exposes direct sends,
queued sends and the delivery queue's state, and lets operators check or
re-initialize the gateway link.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from api.dependencies import (
    get_db, get_current_user, get_connection_manager, get_delivery_queue, get_gateway
)
from api.metrics import webhook_events_total
from api.schemas import (
    SendTextRequest, SendMediaRequest, GatewayResponse, QueuedJobResponse, QueueStatus,
    DeliveryJobOut, WebhookEvent, WebhookResponse
)
from api.websocket_manager import ConnectionManager
from core.audit_logger import audit_logger
from core.exceptions import GatewayError, InvalidPayloadError, NotFoundError
from services.chat_service import ChatService
from services.whatsapp_gateway import WhatsAppGateway
from workers.delivery_queue import DeliveryQueue

logger = logging.getLogger(__name__)

router = APIRouter()
protected = [Depends(get_current_user)]


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(
    event: WebhookEvent,
    request: Request,
    db: Session = Depends(get_db),
    connection_manager: ConnectionManager = Depends(get_connection_manager)
):
    """
    Inbound gateway webhook.

    messages.upsert events are persisted as INBOUND messages (contact and
    open chat are found or created) and broadcast as new_message to the
    chat room. Every other event kind is acknowledged without writes.

    Raises:
        HTTPException: 400 for an upsert with no sender or content,
            500 if persistence fails
    """
    client_ip = request.client.host if request.client else None
    chat_service = ChatService(db, connection_manager)

    try:
        await chat_service.process_webhook(event)
    except InvalidPayloadError as e:
        webhook_events_total.labels(event=event.event or "unknown", result="rejected").inc()
        audit_logger.log_webhook(event.event, client_ip, accepted=False, error_message=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        db.rollback()
        webhook_events_total.labels(event=event.event or "unknown", result="error").inc()
        logger.exception(f"Error processing webhook {event.event}: {e}")
        audit_logger.log_webhook(event.event, client_ip, accepted=False, error_message=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process webhook"
        )

    audit_logger.log_webhook(event.event, client_ip, accepted=True)
    return WebhookResponse(success=True)


@router.post("/send-text", response_model=GatewayResponse, dependencies=protected)
async def send_text(request: SendTextRequest, gateway: WhatsAppGateway = Depends(get_gateway)):
    """
    Send a text message through the gateway synchronously.

    Raises:
        HTTPException: 400 when "to" or "message" is missing, 500 when the
            gateway call fails
    """
    if not request.to or not request.message:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    try:
        result = await gateway.send_text(request.to, request.message)
    except GatewayError as e:
        logger.error(f"Direct text send to {request.to} failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send message")

    return GatewayResponse(success=True, data=result)


@router.post("/send-media", response_model=GatewayResponse, dependencies=protected)
async def send_media(request: SendMediaRequest, gateway: WhatsAppGateway = Depends(get_gateway)):
    """Send a media message through the gateway synchronously."""
    if not request.to or not request.url or not request.media_type:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    try:
        result = await gateway.send_media(request.to, request.url, request.media_type, request.caption)
    except GatewayError as e:
        logger.error(f"Direct media send to {request.to} failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send media")

    return GatewayResponse(success=True, data=result)


@router.post(
    "/queue/text",
    response_model=QueuedJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=protected
)
def queue_text(request: SendTextRequest, delivery_queue: DeliveryQueue = Depends(get_delivery_queue)):
    """Queue a text message for background delivery with retries."""
    if not request.to or not request.message:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    job = delivery_queue.enqueue_text(request.to, request.message)
    return QueuedJobResponse(job_id=job.id)


@router.post(
    "/queue/media",
    response_model=QueuedJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=protected
)
def queue_media(request: SendMediaRequest, delivery_queue: DeliveryQueue = Depends(get_delivery_queue)):
    """Queue a media message for background delivery with retries."""
    if not request.to or not request.url or not request.media_type:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    job = delivery_queue.enqueue_media(request.to, request.url, request.media_type, caption=request.caption)
    return QueuedJobResponse(job_id=job.id)


@router.get("/queue-status", response_model=QueueStatus, dependencies=protected)
def queue_status(delivery_queue: DeliveryQueue = Depends(get_delivery_queue)):
    """Job counts per status plus the total."""
    return QueueStatus(**delivery_queue.get_status())


@router.get("/queue/{job_id}", response_model=DeliveryJobOut, dependencies=protected)
def get_queued_job(job_id: int, delivery_queue: DeliveryQueue = Depends(get_delivery_queue)):
    job = delivery_queue.get_job(job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@router.delete("/queue/{job_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=protected)
def remove_queued_job(job_id: int, delivery_queue: DeliveryQueue = Depends(get_delivery_queue)):
    """
    Remove a queued job.

    Raises:
        HTTPException: 404 if the job does not exist, 409 while it is being processed
    """
    try:
        removed = delivery_queue.remove(job_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    if not removed:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job is being processed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/status", response_model=GatewayResponse, dependencies=protected)
async def gateway_status(gateway: WhatsAppGateway = Depends(get_gateway)):
    """Current gateway instance state."""
    try:
        result = await gateway.get_instance_status()
    except GatewayError as e:
        logger.error(f"Gateway status check failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to get WhatsApp status")
    return GatewayResponse(success=True, data=result)


@router.post("/initialize", response_model=GatewayResponse, dependencies=protected)
async def initialize_gateway(gateway: WhatsAppGateway = Depends(get_gateway)):
    """Create or reconnect the gateway instance and register the webhook callback."""
    try:
        result = await gateway.initialize()
    except GatewayError as e:
        logger.error(f"Gateway initialization failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to initialize WhatsApp")
    return GatewayResponse(success=True, data=result)
