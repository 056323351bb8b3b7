"""
Audit logging for security-relevant events on the chat pipeline.
Records socket authentication outcomes and inbound gateway webhooks.
"""
import logging
import json
from datetime import datetime
from typing import Dict, Any, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Types of audit events."""
    SOCKET_AUTH_SUCCESS = "socket_auth_success"
    SOCKET_AUTH_FAILURE = "socket_auth_failure"
    REST_AUTH_FAILURE = "rest_auth_failure"
    WEBHOOK_RECEIVED = "webhook_received"
    WEBHOOK_REJECTED = "webhook_rejected"


class AuditLogger:
    """
    Audit logger for compliance and forensics.

    Every entry carries timestamp, event type, user identifier, source
    address and free-form metadata.
    """

    @staticmethod
    def log_event(
        event_type: AuditEventType,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None
    ) -> None:
        """
        Log an audit event.

        Args:
            event_type: Type of event
            user_id: Operator identifier (if known)
            ip_address: Source IP address
            success: Whether the operation succeeded
            metadata: Additional context
            error_message: Error message for failed operations
        """
        audit_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "event_type": event_type.value,
            "success": success,
            "user_id": user_id,
            "ip_address": ip_address,
            "metadata": metadata or {},
            "error_message": error_message
        }

        log_level = logging.INFO if success else logging.WARNING
        logger.log(
            log_level,
            f"AUDIT: {event_type.value} | user={user_id} | ip={ip_address} | "
            f"success={success} | {json.dumps(audit_entry)}"
        )

    @staticmethod
    def log_socket_auth_success(user_id: str, ip_address: Optional[str], session_id: str) -> None:
        """Log an admitted socket connection."""
        AuditLogger.log_event(
            event_type=AuditEventType.SOCKET_AUTH_SUCCESS,
            user_id=user_id,
            ip_address=ip_address,
            metadata={"session_id": session_id}
        )

    @staticmethod
    def log_socket_auth_failure(ip_address: Optional[str], reason: str) -> None:
        """Log a refused socket connection."""
        AuditLogger.log_event(
            event_type=AuditEventType.SOCKET_AUTH_FAILURE,
            ip_address=ip_address,
            success=False,
            error_message=reason
        )

    @staticmethod
    def log_rest_auth_failure(ip_address: Optional[str], path: str, reason: str) -> None:
        """Log a rejected bearer token on the REST surface."""
        AuditLogger.log_event(
            event_type=AuditEventType.REST_AUTH_FAILURE,
            ip_address=ip_address,
            success=False,
            metadata={"path": path},
            error_message=reason
        )

    @staticmethod
    def log_webhook(event: Optional[str], ip_address: Optional[str], accepted: bool, error_message: Optional[str] = None) -> None:
        """Log an inbound gateway webhook."""
        AuditLogger.log_event(
            event_type=AuditEventType.WEBHOOK_RECEIVED if accepted else AuditEventType.WEBHOOK_REJECTED,
            ip_address=ip_address,
            success=accepted,
            metadata={"event": event},
            error_message=error_message
        )


# Global audit logger instance
audit_logger = AuditLogger()
