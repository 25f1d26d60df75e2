"""Gmail API client.

This module wraps the Gmail REST API for reply tracking: listing candidate
inbound messages, fetching message detail and thread membership, reading the
history log, sending and trashing messages, and managing the push
notification watch.

The client holds no sync state and never retries. HTTP failures are mapped
onto the shared error taxonomy:

- 401 -> AuthExpiredError
- 404 -> MessageNotFoundError (CursorExpiredError for the history endpoint)
- 429, 5xx, timeouts, network errors -> RemoteUnavailableError
- any other 4xx -> GmailServiceError
"""

import base64
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email import encoders
from email.header import Header
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any
import httpx
from pydantic import BaseModel, Field

from app.core.errors import (
    AuthExpiredError,
    CursorExpiredError,
    LeadflowError,
    RemoteUnavailableError,
)
from app.core.tracing import get_tracer, safe_span_attributes
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

TokenProvider = Callable[[], Awaitable[str]]


class GmailServiceError(LeadflowError):
    """Base exception for Gmail API errors that are neither auth nor transient."""

    def __init__(self, message: str, status_code: int = 500, error_code: str = "gmail_service_error"):
        super().__init__(message=message, status_code=status_code, error_code=error_code)


class MessageNotFoundError(GmailServiceError):
    """Raised when a message or thread no longer exists."""

    def __init__(self, message: str = "Message or thread not found"):
        super().__init__(
            message=message,
            status_code=404,
            error_code="message_not_found"
        )


class MessageStub(BaseModel):
    """A list-endpoint entry: ids only."""
    id: str
    thread_id: str = ""


class MailMessage(BaseModel):
    """A fully fetched inbound message."""
    id: str
    thread_id: str
    sender_name: str
    sender_address: str
    subject: str
    body: str
    received_at: datetime
    read: bool
    message_id_header: str | None = None
    in_reply_to: str | None = None
    label_ids: list[str] = Field(default_factory=list)


class Attachment(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"
    content: str = Field(description="Base64-encoded file content")


class OutgoingMessage(BaseModel):
    to: str
    subject: str
    html: str
    attachments: list[Attachment] = Field(default_factory=list)
    thread_id: str | None = None


class SendResult(BaseModel):
    remote_message_id: str
    thread_id: str


class WatchSubscription(BaseModel):
    """An active Gmail push-notification watch."""
    history_id: str
    expires_at: datetime


def _get_header_value(headers: list[dict], name: str) -> str | None:
    """Extract header value from Gmail message headers.

    Args:
        headers: List of header dicts from Gmail API
        name: Header name to find (case-insensitive)

    Returns:
        Header value or None if not found
    """
    for header in headers:
        if header.get("name", "").lower() == name.lower():
            return header.get("value")
    return None


_CHARSET_RE = re.compile(r'charset="?([\w.:-]+)"?', re.IGNORECASE)


def _part_charset(part: dict[str, Any]) -> str:
    content_type = _get_header_value(part.get("headers", []), "Content-Type") or ""
    match = _CHARSET_RE.search(content_type)
    return match.group(1) if match else "utf-8"


def _decode_part_data(data: str, charset: str = "utf-8") -> str:
    """Decode a base64url body from the Gmail API into text."""
    raw = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def _collect_text_parts(part: dict[str, Any], found: dict[str, str]) -> None:
    mime_type = part.get("mimeType", "")
    data = (part.get("body") or {}).get("data")
    is_attachment = bool(part.get("filename"))

    if data and not is_attachment and mime_type in ("text/plain", "text/html") and mime_type not in found:
        found[mime_type] = _decode_part_data(data, _part_charset(part))

    for child in part.get("parts") or []:
        _collect_text_parts(child, found)


def extract_body(payload: dict[str, Any]) -> str:
    """Return the text/plain body, falling back to text/html, else empty."""
    found: dict[str, str] = {}
    _collect_text_parts(payload, found)
    return found.get("text/plain") or found.get("text/html") or ""


def _parse_received_at(date_header: str | None, internal_date: str | None) -> datetime:
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header", extra={"date_header": date_header})

    if internal_date:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)

    return datetime.now(timezone.utc)


def parse_message(data: dict[str, Any]) -> MailMessage:
    """Convert a Gmail `format=full` message resource into a MailMessage."""
    payload = data.get("payload") or {}
    headers = payload.get("headers", [])

    sender_name, sender_address = parseaddr(_get_header_value(headers, "From") or "")
    label_ids = data.get("labelIds") or []

    return MailMessage(
        id=data["id"],
        thread_id=data.get("threadId", ""),
        sender_name=sender_name or sender_address,
        sender_address=sender_address,
        subject=_get_header_value(headers, "Subject") or "(No Subject)",
        body=extract_body(payload),
        received_at=_parse_received_at(
            _get_header_value(headers, "Date"),
            data.get("internalDate"),
        ),
        read="UNREAD" not in label_ids,
        message_id_header=_get_header_value(headers, "Message-ID"),
        in_reply_to=_get_header_value(headers, "In-Reply-To"),
        label_ids=label_ids,
    )


def build_mime_message(message: OutgoingMessage) -> str:
    """Build a base64url-encoded RFC 2822 message ready for messages.send.

    HTML-only messages are a single text/html part; messages with attachments
    become multipart/mixed with the HTML body first.
    """
    html_part = MIMEText(message.html, "html", "utf-8")

    if message.attachments:
        mime: MIMEBase = MIMEMultipart("mixed")
        mime.attach(html_part)
        for attachment in message.attachments:
            maintype, _, subtype = attachment.content_type.partition("/")
            part = MIMEBase(maintype or "application", subtype or "octet-stream")
            part.set_payload(base64.b64decode(attachment.content))
            encoders.encode_base64(part)
            part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            mime.attach(part)
    else:
        mime = html_part

    mime["To"] = message.to
    mime["Subject"] = message.subject if message.subject.isascii() else Header(message.subject, "utf-8").encode()

    return base64.urlsafe_b64encode(mime.as_bytes()).decode("utf-8")


def _error_message(response: httpx.Response, default: str = "Unknown error") -> str:
    if not response.content:
        return default
    try:
        error_data = response.json()
    except ValueError:
        return default
    if isinstance(error_data, dict):
        error = error_data.get("error")
        if isinstance(error, dict):
            return error.get("message") or default
    return default


class GmailClient:
    """Stateless Gmail API wrapper used by the sync engine and outreach service."""

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str = GMAIL_API_BASE,
        timeout: float = 15.0,
    ):
        self._token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        not_found: type[LeadflowError] = MessageNotFoundError,
    ) -> httpx.Response:
        with tracer.start_as_current_span(f"gmail.{operation}") as span:
            span.set_attributes(safe_span_attributes(operation=operation, method=method))

            access_token = await self._token_provider()
            headers = {
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            }

            try:
                async with httpx.AsyncClient() as client:
                    if method == "GET":
                        response = await client.get(
                            f"{self.base_url}{path}",
                            headers=headers,
                            params=params,
                            timeout=self.timeout
                        )
                    else:
                        response = await client.post(
                            f"{self.base_url}{path}",
                            headers=headers,
                            params=params,
                            json=json,
                            timeout=self.timeout
                        )

            except httpx.TimeoutException:
                logger.error("Gmail API timeout", extra={"operation": operation})
                span.set_status(Status(StatusCode.ERROR, "Timeout"))
                raise RemoteUnavailableError("Gmail API request timeout. Please try again.")

            except httpx.RequestError as e:
                logger.error(
                    "Gmail API network error",
                    extra={"operation": operation, "error": str(e)}
                )
                span.set_status(Status(StatusCode.ERROR, "Network error"))
                raise RemoteUnavailableError("Unable to connect to Gmail API. Please try again later.")

            status_code = response.status_code
            span.set_attribute("http.status_code", status_code)

            if status_code == 401:
                logger.warning("Gmail API returned 401", extra={"operation": operation})
                span.set_status(Status(StatusCode.ERROR, "Unauthorized"))
                raise AuthExpiredError()

            elif status_code == 404:
                logger.warning("Gmail resource not found", extra={"operation": operation, "path": path})
                span.set_status(Status(StatusCode.ERROR, "Not found"))
                raise not_found(f"Gmail {operation}: resource not found")

            elif status_code == 429:
                logger.warning("Gmail API rate limit exceeded", extra={"operation": operation})
                span.set_status(Status(StatusCode.ERROR, "Rate limited"))
                raise RemoteUnavailableError("Gmail API rate limit exceeded. Please try again later.")

            elif status_code >= 500:
                logger.error(
                    "Gmail API server error",
                    extra={"operation": operation, "status_code": status_code}
                )
                span.set_status(Status(StatusCode.ERROR, f"HTTP {status_code}"))
                raise RemoteUnavailableError()

            elif status_code >= 400:
                error_message = _error_message(response)
                logger.error(
                    "Gmail API error",
                    extra={"operation": operation, "status_code": status_code, "error": error_message}
                )
                span.set_status(Status(StatusCode.ERROR, f"HTTP {status_code}"))
                raise GmailServiceError(
                    message=f"Gmail {operation} failed: {error_message}",
                    status_code=status_code,
                    error_code=f"{operation}_error"
                )

            span.set_status(Status(StatusCode.OK))
            return response

    async def list_candidate_messages(
        self,
        query: str,
        page_token: str | None = None,
        max_results: int = 50,
    ) -> tuple[list[MessageStub], str | None]:
        """List message ids matching a Gmail search query, one page at a time.

        Returns:
            (stubs, next_page_token); the token is None on the last page
        """
        params: dict[str, Any] = {"q": query, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token

        response = await self._request("GET", "/messages", operation="list_messages", params=params)
        data = response.json()

        stubs = [
            MessageStub(id=item["id"], thread_id=item.get("threadId", ""))
            for item in data.get("messages", [])
        ]

        logger.info(
            "Listed candidate messages",
            extra={"count": len(stubs), "has_more": bool(data.get("nextPageToken"))}
        )
        return stubs, data.get("nextPageToken")

    async def fetch_message_detail(self, message_id: str) -> MailMessage:
        response = await self._request(
            "GET",
            f"/messages/{message_id}",
            operation="get_message",
            params={"format": "full"},
        )
        return parse_message(response.json())

    async def fetch_thread_members(self, thread_id: str) -> list[str]:
        """Return the ids of every message in a thread."""
        response = await self._request(
            "GET",
            f"/threads/{thread_id}",
            operation="get_thread",
            params={"format": "minimal"},
        )
        return [message["id"] for message in response.json().get("messages", [])]

    async def get_current_history_id(self) -> str:
        """Read the mailbox's current history id from the profile endpoint."""
        response = await self._request("GET", "/profile", operation="get_profile")
        return str(response.json()["historyId"])

    async def fetch_history_since(self, cursor: str) -> list[dict[str, Any]] | None:
        """Collect history records after `cursor`, following pagination.

        Returns:
            The history records, or None when Gmail no longer knows the cursor
            and a full sync is required.
        """
        records: list[dict[str, Any]] = []
        page_token: str | None = None

        try:
            while True:
                params: dict[str, Any] = {
                    "startHistoryId": cursor,
                    "historyTypes": "messageAdded",
                    "labelId": "INBOX",
                }
                if page_token:
                    params["pageToken"] = page_token

                response = await self._request(
                    "GET",
                    "/history",
                    operation="list_history",
                    params=params,
                    not_found=CursorExpiredError,
                )
                data = response.json()
                records.extend(data.get("history", []))

                page_token = data.get("nextPageToken")
                if not page_token:
                    break

        except CursorExpiredError:
            logger.warning("History cursor expired", extra={"cursor": cursor})
            return None

        return records

    async def send(self, message: OutgoingMessage) -> SendResult:
        payload: dict[str, Any] = {"raw": build_mime_message(message)}
        if message.thread_id:
            payload["threadId"] = message.thread_id

        response = await self._request("POST", "/messages/send", operation="send_message", json=payload)
        data = response.json()

        logger.info(
            "Email sent via Gmail API",
            extra={"message_id": data.get("id"), "thread_id": data.get("threadId")}
        )
        return SendResult(remote_message_id=data["id"], thread_id=data.get("threadId", ""))

    async def trash(self, remote_message_id: str) -> None:
        await self._request("POST", f"/messages/{remote_message_id}/trash", operation="trash_message")

    async def mark_read(self, remote_message_id: str) -> None:
        await self._request(
            "POST",
            f"/messages/{remote_message_id}/modify",
            operation="modify_message",
            json={"removeLabelIds": ["UNREAD"]},
        )

    async def register_watch(self, topic: str) -> WatchSubscription | None:
        """Start push notifications for INBOX changes on a Pub/Sub topic.

        Returns None when Gmail rejects the watch (bad topic, missing Pub/Sub
        permission, transient failure); callers fall back to polling.
        AuthExpiredError still propagates.
        """
        try:
            response = await self._request(
                "POST",
                "/watch",
                operation="watch",
                json={"topicName": topic, "labelIds": ["INBOX"]},
            )
        except (GmailServiceError, RemoteUnavailableError) as e:
            logger.error("Gmail watch setup failed", extra={"error": e.message})
            return None

        data = response.json()
        subscription = WatchSubscription(
            history_id=str(data["historyId"]),
            expires_at=datetime.fromtimestamp(int(data["expiration"]) / 1000, tz=timezone.utc),
        )
        logger.info("Gmail push notifications enabled", extra={"expires_at": subscription.expires_at.isoformat()})
        return subscription

    async def cancel_watch(self) -> None:
        await self._request("POST", "/stop", operation="stop_watch")
        logger.info("Gmail watch stopped")
