"""Exception hierarchy for the chat delivery service."""
from typing import Optional


class ChatDeliveryError(Exception):
    """Base exception for all chat delivery errors."""


class AuthenticationError(ChatDeliveryError):
    """Bearer credential missing or rejected."""

    TOKEN_NOT_PROVIDED = "Token not provided"
    INVALID_TOKEN = "Invalid token"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Authentication error: {reason}")

    @property
    def is_missing_token(self) -> bool:
        return self.reason == self.TOKEN_NOT_PROVIDED


class GatewayError(ChatDeliveryError):
    """Messaging gateway call failed (transport error, timeout or non-2xx)."""

    def __init__(self, detail: str, status_code: Optional[int] = None):
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail if status_code is None else f"{detail} (HTTP {status_code})")


class NotFoundError(ChatDeliveryError):
    """Referenced record does not exist."""


class InvalidPayloadError(ChatDeliveryError):
    """Request or event payload is malformed."""
