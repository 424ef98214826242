from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from paybill.core.config import settings
from paybill.core.database import get_db
from paybill.core.errors import AuthenticationError
from paybill.models.user import User
from paybill.repositories.user_repository import UserRepository


def issue_access_token(user_id: UUID, expires_in: timedelta | None = None) -> str:
    """Sign a bearer token for ``user_id``. Login flows live outside this service."""
    payload = {
        "sub": str(user_id),
        "type": "access",
        "exp": datetime.now(UTC) + (expires_in or timedelta(minutes=settings.JWT_EXPIRES_MINUTES)),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> UUID:
    """Decode a bearer token and return the user id it was issued for.

    Raises jwt.ExpiredSignatureError or jwt.InvalidTokenError on failure.
    """
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError("Invalid token type")
    return UUID(payload["sub"])


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
) -> User:
    """Resolve the authenticated user from the ``Authorization: Bearer`` header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise AuthenticationError("Authentication required")

    if not auth_header.startswith("Bearer "):
        raise AuthenticationError("Invalid authorization header format")

    token = auth_header[7:]
    if not token:
        raise AuthenticationError("Access token is required")

    try:
        user_id = verify_access_token(token)
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired") from None
    except (jwt.InvalidTokenError, KeyError, ValueError):
        raise AuthenticationError("Invalid token") from None

    user = UserRepository(db).get_active(user_id)
    if not user:
        raise AuthenticationError("User not found or inactive")
    return user
