"""
Authentication dependencies for FastAPI endpoints.

Account endpoints verify a Supabase JWT bearer token; the account id is the
Supabase user id. Webhook endpoints compare a shared Authorization value
configured on the payment provider's dashboard.
"""

import hmac
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from guidepass.config import get_settings

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class AuthenticatedUser(BaseModel):
    """Represents a verified authenticated user."""

    id: str
    email: str | None = None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    Verify a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        structlog.contextvars.bind_contextvars(account_id=str(user.id))
        return AuthenticatedUser(id=str(user.id), email=user.email)
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")


async def verify_webhook_authorization(
    authorization: str | None = Header(default=None),
) -> None:
    """
    Check the webhook Authorization header against the configured token.

    The check is skipped when no token is configured (local development).

    Raises:
        HTTPException 401: header missing or different from the token.
    """
    expected = get_settings().webhook.auth_token
    if not expected:
        return
    if not authorization or not hmac.compare_digest(
        authorization.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("webhook_authorization_rejected")
        raise HTTPException(status_code=401, detail="Invalid webhook authorization")


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
WebhookAuthorized = Depends(verify_webhook_authorization)
