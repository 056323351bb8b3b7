"""
Security utilities for bearer credential verification.
Uses python-jose for JWT token generation and validation.

Token issuance belongs to the CRM's auth service; this module only verifies
tokens. create_access_token exists for local tooling and tests.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from jose import jwt, JWTError
from core.config import settings
from core.exceptions import AuthenticationError


@dataclass(frozen=True)
class Identity:
    """Decoded identity of an authenticated operator."""
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None


def create_access_token(
    user_id: str,
    email: Optional[str] = None,
    role: str = "USER",
    expires_minutes: Optional[int] = None
) -> str:
    """
    Create a signed JWT carrying the operator identity.

    Args:
        user_id: Operator ID to encode in the token
        email: Operator email
        role: Operator role (ADMIN, MANAGER, USER)
        expires_minutes: Lifetime override (default: settings.access_token_expire_minutes)

    Returns:
        Encoded JWT string
    """
    now = datetime.utcnow()
    lifetime = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
    payload = {
        "userId": str(user_id),
        "email": email,
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=lifetime),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def authenticate_token(token: Optional[str]) -> Identity:
    """
    Verify a bearer credential and return the identity it carries.

    Args:
        token: Raw bearer token (may be None or empty)

    Returns:
        Identity decoded from the token

    Raises:
        AuthenticationError: reason "Token not provided" when the token is
            missing, "Invalid token" when it fails verification
    """
    if not token:
        raise AuthenticationError(AuthenticationError.TOKEN_NOT_PROVIDED)

    payload = decode_access_token(token)
    if not payload:
        raise AuthenticationError(AuthenticationError.INVALID_TOKEN)

    user_id = payload.get("userId") or payload.get("id")
    if not user_id:
        raise AuthenticationError(AuthenticationError.INVALID_TOKEN)

    return Identity(
        user_id=str(user_id),
        email=payload.get("email"),
        role=payload.get("role")
    )
