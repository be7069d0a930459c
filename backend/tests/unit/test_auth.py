"""
Unit tests for the auth dependencies (get_current_user, webhook authorization).
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from guidepass.auth import AuthenticatedUser, get_current_user, verify_webhook_authorization
from guidepass.config import get_settings


def _make_request(supabase_client=None):
    """Create a mock FastAPI Request with app.state.supabase set."""
    request = MagicMock()
    request.app.state.supabase = supabase_client
    return request


def _make_credentials(token: str = "valid-token") -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.fixture
def webhook_token(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("WEBHOOK__AUTH_TOKEN", "Bearer rc-secret")
    get_settings.cache_clear()
    yield "Bearer rc-secret"
    get_settings.cache_clear()


class TestGetCurrentUser:
    """Tests for the get_current_user dependency."""

    async def test_valid_token_returns_user(self):
        """A valid token returns an AuthenticatedUser."""
        mock_user = MagicMock()
        mock_user.id = "user-123"
        mock_user.email = "test@example.com"

        mock_response = MagicMock()
        mock_response.user = mock_user

        mock_supabase = MagicMock()
        mock_supabase.auth.get_user = AsyncMock(return_value=mock_response)

        request = _make_request(supabase_client=mock_supabase)
        credentials = _make_credentials("valid-token")

        result = await get_current_user(request, credentials)

        assert isinstance(result, AuthenticatedUser)
        assert result.id == "user-123"
        assert result.email == "test@example.com"
        mock_supabase.auth.get_user.assert_awaited_once_with("valid-token")

    async def test_binds_account_id_to_log_context(self):
        mock_user = MagicMock()
        mock_user.id = "user-123"
        mock_user.email = None
        mock_supabase = MagicMock()
        mock_supabase.auth.get_user = AsyncMock(return_value=MagicMock(user=mock_user))
        structlog.contextvars.clear_contextvars()

        await get_current_user(_make_request(mock_supabase), _make_credentials())

        assert structlog.contextvars.get_contextvars()["account_id"] == "user-123"
        structlog.contextvars.clear_contextvars()

    async def test_invalid_token_raises_401(self):
        """A token that returns no user raises 401."""
        mock_response = MagicMock()
        mock_response.user = None

        mock_supabase = MagicMock()
        mock_supabase.auth.get_user = AsyncMock(return_value=mock_response)

        request = _make_request(supabase_client=mock_supabase)
        credentials = _make_credentials("bad-token")

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(request, credentials)

        assert exc_info.value.status_code == 401

    async def test_expired_token_raises_401(self):
        """A token that causes an exception raises 401."""
        mock_supabase = MagicMock()
        mock_supabase.auth.get_user = AsyncMock(side_effect=Exception("Token expired"))

        request = _make_request(supabase_client=mock_supabase)
        credentials = _make_credentials("expired-token")

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(request, credentials)

        assert exc_info.value.status_code == 401

    async def test_no_supabase_client_raises_503(self):
        """When Supabase client is None, raises 503."""
        request = _make_request(supabase_client=None)
        credentials = _make_credentials("any-token")

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(request, credentials)

        assert exc_info.value.status_code == 503


class TestVerifyWebhookAuthorization:
    async def test_no_token_configured_allows_request(self):
        get_settings.cache_clear()

        await verify_webhook_authorization(authorization=None)

    async def test_matching_header_passes(self, webhook_token):
        await verify_webhook_authorization(authorization=webhook_token)

    async def test_missing_header_raises_401(self, webhook_token):
        with pytest.raises(HTTPException) as exc_info:
            await verify_webhook_authorization(authorization=None)

        assert exc_info.value.status_code == 401

    async def test_wrong_header_raises_401(self, webhook_token):
        with pytest.raises(HTTPException) as exc_info:
            await verify_webhook_authorization(authorization="Bearer wröng")

        assert exc_info.value.status_code == 401
