"""Google OAuth access tokens for the Gmail API.

The consent flow happens elsewhere; this module only turns a stored refresh
token into short-lived access tokens and caches them until shortly before
they expire.
"""

import logging
import time
import httpx

from app.core.config import Settings
from app.core.errors import AuthExpiredError, LeadflowError, RemoteUnavailableError
from app.core.tracing import get_tracer, safe_span_attributes
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh this many seconds before Google's stated expiry
EXPIRY_MARGIN_SECONDS = 60


class TokenRefreshError(LeadflowError):
    """Raised when Google returns an unusable token response."""

    def __init__(self, message: str, status_code: int = 500, error_code: str = "token_refresh_error"):
        super().__init__(message=message, status_code=status_code, error_code=error_code)


class GoogleTokenProvider:
    """Callable token provider backed by the refresh-token grant."""

    def __init__(self, client_id: str, client_secret: str, refresh_token: str):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self._access_token: str | None = None
        self._expires_at: float = 0.0

    async def __call__(self) -> str:
        if self._access_token and time.monotonic() < self._expires_at:
            return self._access_token
        return await self.refresh()

    def invalidate(self) -> None:
        self._access_token = None
        self._expires_at = 0.0

    async def refresh(self) -> str:
        """Exchange the refresh token for a new access token.

        Raises:
            AuthExpiredError: The refresh token was revoked or expired (invalid_grant)
            RemoteUnavailableError: Timeout, network failure or Google 5xx
            TokenRefreshError: Any other rejection or a malformed response
        """
        with tracer.start_as_current_span("google_oauth.refresh") as span:
            span.set_attributes(safe_span_attributes(client_id=self.client_id, provider="google"))

            payload = {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
            }

            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        GOOGLE_TOKEN_URL,
                        data=payload,
                        headers={"Content-Type": "application/x-www-form-urlencoded"},
                        timeout=10.0
                    )

            except httpx.TimeoutException:
                logger.error("Google token refresh timeout")
                span.set_status(Status(StatusCode.ERROR, "Timeout"))
                raise RemoteUnavailableError("Google token service timeout. Please try again.")

            except httpx.RequestError as e:
                logger.error("Google token refresh network error", extra={"error": str(e)})
                span.set_status(Status(StatusCode.ERROR, "Network error"))
                raise RemoteUnavailableError("Unable to connect to Google token service. Please try again later.")

            error_data = response.json() if response.status_code >= 400 and response.content else {}
            error = error_data.get("error", "")
            error_description = error_data.get("error_description", "")

            if response.status_code in (400, 401) and error in ("invalid_grant", "unauthorized_client"):
                logger.warning(
                    "Google refresh token rejected",
                    extra={"error": error, "error_description": error_description}
                )
                span.set_status(Status(StatusCode.ERROR, "Invalid grant"))
                self.invalidate()
                raise AuthExpiredError()

            elif response.status_code >= 500:
                logger.error("Google token service error", extra={"status_code": response.status_code})
                span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
                raise RemoteUnavailableError("Google token service is unavailable. Please try again later.")

            elif response.status_code >= 400:
                logger.error(
                    "Google token refresh failed",
                    extra={"status_code": response.status_code, "error": error, "error_description": error_description}
                )
                span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
                raise TokenRefreshError(
                    message=f"Token refresh failed: {error_description or error or 'Unknown error'}",
                    status_code=response.status_code,
                    error_code=error or "token_refresh_error"
                )

            token_data = response.json()
            access_token = token_data.get("access_token")
            if not access_token:
                logger.error("Token refresh response missing access_token field")
                span.set_status(Status(StatusCode.ERROR, "Missing access token"))
                raise TokenRefreshError("Invalid token response from Google")

            expires_in = int(token_data.get("expires_in", 3600))
            self._access_token = access_token
            self._expires_at = time.monotonic() + max(expires_in - EXPIRY_MARGIN_SECONDS, 0)

            logger.info("Google access token refreshed", extra={"expires_in": expires_in})
            span.set_status(Status(StatusCode.OK))
            span.set_attribute("expires_in_seconds", expires_in)

            return access_token


class StaticTokenProvider:
    """Token provider for a pre-issued access token (local development)."""

    def __init__(self, access_token: str):
        self.access_token = access_token

    async def __call__(self) -> str:
        return self.access_token


def build_token_provider(settings: Settings) -> GoogleTokenProvider | StaticTokenProvider | None:
    """Pick a token provider from settings, or None when Gmail is not configured."""
    if settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET and settings.GMAIL_REFRESH_TOKEN:
        return GoogleTokenProvider(
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            refresh_token=settings.GMAIL_REFRESH_TOKEN,
        )
    if settings.GMAIL_ACCESS_TOKEN:
        return StaticTokenProvider(settings.GMAIL_ACCESS_TOKEN)
    return None
