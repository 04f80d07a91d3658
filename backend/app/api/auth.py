############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# auth.py: API authentication and authorization dependencies
#
############################################################

"""API authentication and authorization."""

import hmac
from typing import AsyncGenerator, Optional

from fastapi import Depends, HTTPException, Request, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.logging_config import bind_request_context, get_logger
from backend.app.security.sessions import verify_session_token
from backend.app.services.container import AppServices
from backend.app.settings import get_settings

logger = get_logger(__name__)

# Security scheme
bearer_scheme = HTTPBearer(auto_error=False)


def _secret_matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def get_services(request: Request) -> AppServices:
    """Lifetime-scoped services built in the lifespan."""
    return request.app.state.services


def get_ws_services(websocket: WebSocket) -> AppServices:
    return websocket.app.state.services


async def get_db(
    services: AppServices = Depends(get_services),
) -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session from the lifespan's session factory; rolls back on error."""
    async with services.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_session_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """
    Extract the session token from the request.

    Supports:
    - Authorization: Bearer <token>
    - the session cookie
    """
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(get_settings().session_cookie_name)


async def get_current_user_id(
    request: Request,
    token: Optional[str] = Depends(get_session_token),
) -> str:
    """
    Resolve the authenticated user id.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    user_id = verify_session_token(token)
    if not user_id:
        logger.warning("unauthenticated_request", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    bind_request_context(user_id=user_id)
    return user_id


def is_admin(user_id: Optional[str]) -> bool:
    return bool(user_id) and user_id in get_settings().admin_user_ids


async def require_credit_grant(
    request: Request,
    token: Optional[str] = Depends(get_session_token),
) -> str:
    """
    Allow billing webhooks (shared secret) and admin users to add credits.

    Returns:
        "webhook" or the admin's user id, for the audit log
    """
    settings = get_settings()
    if _secret_matches(request.headers.get("X-Webhook-Secret"), settings.webhook_secret):
        return "webhook"

    user_id = verify_session_token(token)
    if is_admin(user_id):
        return user_id

    logger.warning("credit_grant_forbidden", path=request.url.path, user_id=user_id)
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not authorized",
    )


async def require_machine_secret(request: Request) -> None:
    """Only the user machines themselves may call internal endpoints."""
    if not _secret_matches(request.headers.get("X-Machine-Secret"), get_settings().machine_secret):
        logger.warning("invalid_machine_secret", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid machine secret",
        )


def authenticate_websocket(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    """User id for a WebSocket from the ``token`` query param or the cookie."""
    if not token:
        token = websocket.cookies.get(get_settings().session_cookie_name)
    return verify_session_token(token)
