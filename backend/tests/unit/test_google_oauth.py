"""Unit tests for Google refresh-token access token provider.

These tests verify the refresh logic with mocked HTTP responses.
"""

import pytest
from unittest.mock import AsyncMock, patch, MagicMock
import httpx

from app.auth.google_oauth import (
    GOOGLE_TOKEN_URL,
    GoogleTokenProvider,
    StaticTokenProvider,
    TokenRefreshError,
    build_token_provider,
)
from app.core.config import Settings
from app.core.errors import AuthExpiredError, RemoteUnavailableError


def make_provider() -> GoogleTokenProvider:
    return GoogleTokenProvider(
        client_id="client-id.apps.googleusercontent.com",
        client_secret="client-secret",
        refresh_token="1//refresh-token",
    )


def patch_token_endpoint(response=None, side_effect=None):
    """Patch httpx.AsyncClient so POSTs return `response` or raise `side_effect`."""
    patcher = patch("httpx.AsyncClient")
    mock_client_class = patcher.start()
    mock_client = AsyncMock()
    mock_client.__aenter__.return_value = mock_client
    mock_client.__aexit__.return_value = None
    mock_client.post = AsyncMock(return_value=response, side_effect=side_effect)
    mock_client_class.return_value = mock_client
    return patcher, mock_client


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_success_and_cache():
    """Test a refreshed token is cached for subsequent calls."""
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.json.return_value = {
        "access_token": "ya29.fresh-token",
        "expires_in": 3599,
        "token_type": "Bearer",
    }

    patcher, mock_client = patch_token_endpoint(mock_response)
    try:
        provider = make_provider()
        assert await provider() == "ya29.fresh-token"
        assert await provider() == "ya29.fresh-token"
    finally:
        patcher.stop()

    assert mock_client.post.call_count == 1
    call_args = mock_client.post.call_args
    assert call_args.args[0] == GOOGLE_TOKEN_URL
    assert call_args.kwargs["data"]["grant_type"] == "refresh_token"
    assert call_args.kwargs["data"]["refresh_token"] == "1//refresh-token"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_invalidate_forces_refresh():
    """Test invalidate() drops the cached token."""
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.json.return_value = {"access_token": "ya29.token", "expires_in": 3600}

    patcher, mock_client = patch_token_endpoint(mock_response)
    try:
        provider = make_provider()
        await provider()
        provider.invalidate()
        await provider()
    finally:
        patcher.stop()

    assert mock_client.post.call_count == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_invalid_grant_raises_auth_expired():
    """Test a revoked refresh token raises AuthExpiredError."""
    mock_response = MagicMock()
    mock_response.status_code = 400
    mock_response.content = b'{"error": "invalid_grant"}'
    mock_response.json.return_value = {
        "error": "invalid_grant",
        "error_description": "Token has been expired or revoked.",
    }

    patcher, _ = patch_token_endpoint(mock_response)
    try:
        with pytest.raises(AuthExpiredError) as exc_info:
            await make_provider()()
    finally:
        patcher.stop()

    assert exc_info.value.status_code == 401


@pytest.mark.unit
@pytest.mark.asyncio
async def test_server_error_raises_remote_unavailable():
    """Test Google 5xx raises RemoteUnavailableError."""
    mock_response = MagicMock()
    mock_response.status_code = 503
    mock_response.content = b""

    patcher, _ = patch_token_endpoint(mock_response)
    try:
        with pytest.raises(RemoteUnavailableError):
            await make_provider()()
    finally:
        patcher.stop()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_other_rejection_raises_token_refresh_error():
    """Test a non-grant 4xx raises TokenRefreshError."""
    mock_response = MagicMock()
    mock_response.status_code = 400
    mock_response.content = b'{"error": "invalid_client"}'
    mock_response.json.return_value = {"error": "invalid_client", "error_description": "The OAuth client was not found."}

    patcher, _ = patch_token_endpoint(mock_response)
    try:
        with pytest.raises(TokenRefreshError) as exc_info:
            await make_provider()()
    finally:
        patcher.stop()

    assert exc_info.value.error_code == "invalid_client"
    assert "not found" in exc_info.value.message


@pytest.mark.unit
@pytest.mark.asyncio
async def test_timeout_raises_remote_unavailable():
    """Test timeout raises RemoteUnavailableError."""
    patcher, _ = patch_token_endpoint(side_effect=httpx.TimeoutException("Request timeout"))
    try:
        with pytest.raises(RemoteUnavailableError) as exc_info:
            await make_provider()()
    finally:
        patcher.stop()

    assert "timeout" in exc_info.value.message.lower()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_network_error_raises_remote_unavailable():
    """Test network error raises RemoteUnavailableError."""
    patcher, _ = patch_token_endpoint(side_effect=httpx.RequestError("Network error"))
    try:
        with pytest.raises(RemoteUnavailableError) as exc_info:
            await make_provider()()
    finally:
        patcher.stop()

    assert "connect" in exc_info.value.message.lower()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_access_token_in_response():
    """Test response without access_token field raises TokenRefreshError."""
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.json.return_value = {"token_type": "Bearer", "expires_in": 3600}

    patcher, _ = patch_token_endpoint(mock_response)
    try:
        with pytest.raises(TokenRefreshError):
            await make_provider()()
    finally:
        patcher.stop()


@pytest.mark.unit
def test_build_token_provider_prefers_refresh_token():
    settings = Settings(
        GOOGLE_CLIENT_ID="id",
        GOOGLE_CLIENT_SECRET="secret",
        GMAIL_REFRESH_TOKEN="refresh",
        GMAIL_ACCESS_TOKEN="static",
    )
    assert isinstance(build_token_provider(settings), GoogleTokenProvider)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_build_token_provider_static_and_unconfigured():
    static = build_token_provider(Settings(GMAIL_ACCESS_TOKEN="ya29.static"))
    assert isinstance(static, StaticTokenProvider)
    assert await static() == "ya29.static"

    assert build_token_provider(Settings()) is None
