"""Shared API dependencies for authentication and common functionality."""

from typing import Annotated

from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from sealed_chat.core.errors import AuthorizationError
from sealed_chat.core.security import decode_access_token
from sealed_chat.db.session import get_db
from sealed_chat.models import User
from sealed_chat.services.gateway import ChatGateway

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    db: SessionDep,
) -> User:
    """Get the current authenticated user from JWT token.

    Args:
        credentials: HTTP Bearer token credentials
        db: Database session

    Returns:
        User object for the authenticated user

    Raises:
        HTTPException: If token is invalid or user not found
    """
    try:
        user_id = decode_access_token(credentials.credentials)
    except AuthorizationError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err

    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user


def get_gateway(websocket: WebSocket) -> ChatGateway:
    """Return the chat gateway created at application startup."""
    gateway: ChatGateway | None = getattr(websocket.app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("Chat gateway is not initialised")
    return gateway


def require_self(current_user: User, claimed_user_id: str | None) -> None:
    """Reject requests that name a user other than the caller."""
    if claimed_user_id is not None and claimed_user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot access another user's data",
        )


# Type alias for current user dependency
CurrentUserDep = Annotated[User, Depends(get_current_user)]
GatewayDep = Annotated[ChatGateway, Depends(get_gateway)]
