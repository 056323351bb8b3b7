"""
Dependency injection functions for FastAPI.
Provides database sessions, bearer authentication and the long-lived
components created at startup (connection manager, gateway, delivery queue).

Components live on app.state and are resolved through HTTPConnection so the
same dependencies serve HTTP routes and the WebSocket endpoint.
"""
from typing import Generator
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from api.websocket_manager import ConnectionManager
from core.audit_logger import audit_logger
from core.exceptions import AuthenticationError
from core.security import Identity, authenticate_token
from services.chat_service import ChatService
from services.whatsapp_gateway import WhatsAppGateway
from workers.delivery_queue import DeliveryQueue

security = HTTPBearer(auto_error=False)


def get_db(connection: HTTPConnection) -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Automatically closes the session when request completes.

    Yields:
        Database session
    """
    db = connection.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_connection_manager(connection: HTTPConnection) -> ConnectionManager:
    return connection.app.state.connection_manager


def get_gateway(connection: HTTPConnection) -> WhatsAppGateway:
    return connection.app.state.gateway


def get_delivery_queue(connection: HTTPConnection) -> DeliveryQueue:
    return connection.app.state.delivery_queue


def get_chat_service(
    db: Session = Depends(get_db),
    connection_manager: ConnectionManager = Depends(get_connection_manager),
    delivery_queue: DeliveryQueue = Depends(get_delivery_queue)
) -> ChatService:
    return ChatService(db, connection_manager, delivery_queue)


def get_current_user(
    connection: HTTPConnection,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Identity:
    """
    JWT bearer authentication dependency.

    Args:
        connection: Current request
        credentials: Bearer token from the Authorization header

    Returns:
        Identity of the authenticated operator

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    try:
        return authenticate_token(credentials.credentials if credentials else None)
    except AuthenticationError as e:
        audit_logger.log_rest_auth_failure(
            ip_address=connection.client.host if connection.client else None,
            path=connection.url.path,
            reason=e.reason
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"}
        )
