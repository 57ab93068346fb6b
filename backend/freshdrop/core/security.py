"""
Bearer token verification for identities issued by the managed auth provider.

The API never stores credentials. It verifies the provider-signed JWT, reads
the subject and application role claims, and hands a ``Principal`` to the
route dependencies.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from jose import JWTError, jwt

from freshdrop.core.config import get_settings
from freshdrop.core.logging import get_logger

logger = get_logger(__name__)


class SecurityError(Exception):
    """Base exception for security-related errors."""

    def __init__(self, message: str, code: str, **context):
        super().__init__(message)
        self.code = code
        self.context = context


class TokenError(SecurityError):
    """Exception raised for token-related errors."""

    pass


class UserRole(str, Enum):
    """Application roles carried in the token's app metadata."""

    CUSTOMER = "customer"
    WASHER = "washer"
    OPERATOR = "operator"
    OWNER = "owner"
    MARKETING = "marketing"

    @property
    def can_fulfill(self) -> bool:
        """Whether the role may claim and work orders."""
        return self in (UserRole.WASHER, UserRole.OPERATOR)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller resolved from a bearer token."""

    user_id: UUID
    role: UserRole
    email: Optional[str] = None


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string to decode

    Returns:
        Dictionary of decoded token claims

    Raises:
        TokenError: If token is invalid, expired, or malformed
    """
    if not token:
        logger.warning("Attempted to decode empty token")
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    settings = get_settings()
    options = {"verify_aud": settings.jwt_audience is not None}

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options=options,
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning(
            "Invalid token",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError(
            "Invalid token",
            code="TOKEN_INVALID",
            original_error=str(e),
        ) from e

    return payload


def principal_from_claims(payload: Dict[str, Any]) -> Principal:
    """
    Build a principal from decoded claims.

    The role lives in ``app_metadata.role``; tokens without one are treated
    as customers, which is how the auth provider provisions new sign-ups.

    Raises:
        TokenError: If the subject is missing or not a UUID, or the role
            is unknown
    """
    subject = payload.get("sub")
    if not subject:
        raise TokenError("Token missing subject", code="TOKEN_NO_SUBJECT")

    try:
        user_id = UUID(str(subject))
    except ValueError as e:
        raise TokenError(
            "Token subject is not a valid user id",
            code="TOKEN_BAD_SUBJECT",
            subject=subject,
        ) from e

    app_metadata = payload.get("app_metadata") or {}
    raw_role = app_metadata.get("role") or payload.get("user_role") or "customer"

    try:
        role = UserRole(str(raw_role).lower())
    except ValueError as e:
        raise TokenError(
            "Token carries an unknown role",
            code="TOKEN_BAD_ROLE",
            role=raw_role,
        ) from e

    return Principal(user_id=user_id, role=role, email=payload.get("email"))


def authenticate_token(token: str) -> Principal:
    """Decode a bearer token and resolve the calling principal."""
    return principal_from_claims(decode_token(token))


def create_access_token(
    user_id: UUID,
    role: UserRole,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Mint a token shaped like the auth provider's.

    Used by local tooling and tests; production tokens come from the
    provider itself.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": str(user_id),
        "email": email,
        "app_metadata": {"role": role.value},
        "iat": now,
        "exp": now + (expires_delta or timedelta(hours=1)),
    }
    if settings.jwt_audience is not None:
        claims["aud"] = settings.jwt_audience

    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
