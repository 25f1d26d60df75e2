"""Reply inbox routes.

Replies are imported by the sync engine; these endpoints list them, act on
them, send tracked outreach email and trigger a manual sync.
"""

import logging
import uuid
from datetime import datetime
from typing import Any
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.api.deps import get_gmail_client, get_optional_gmail_client, get_reply_store, get_sync_engine
from app.core.errors import LeadflowError
from app.inbox.outreach import delete_reply, mark_reply_read, send_tracked_email
from app.inbox.reply_store import ReplyStore
from app.integrations.gmail_service import Attachment, GmailClient, OutgoingMessage
from app.sync.engine import SyncEngine, SyncResult

logger = logging.getLogger(__name__)

inbox_router = APIRouter(prefix="/inbox", tags=["inbox"])


class ReplyResponse(BaseModel):
    id: uuid.UUID
    sender_name: str
    sender_address: str
    subject: str
    body: str
    received_at: datetime
    read: bool
    thread_id: str | None = None


class SendEmailRequest(BaseModel):
    to: str
    subject: str
    html: str
    attachments: list[Attachment] = Field(default_factory=list)
    thread_id: str | None = None


class SendEmailResponse(BaseModel):
    message_id: str
    thread_id: str


class SyncRequest(BaseModel):
    page_token: str | None = None


@inbox_router.get("/replies", response_model=list[ReplyResponse])
async def list_replies(
    unread_only: bool = False,
    store: ReplyStore = Depends(get_reply_store),
) -> list[ReplyResponse]:
    """List imported replies, newest first."""
    replies = await store.list_replies(unread_only=unread_only)
    return [ReplyResponse.model_validate(reply, from_attributes=True) for reply in replies]


@inbox_router.post("/replies/{reply_id}/read", status_code=204)
async def read_reply(
    reply_id: uuid.UUID,
    store: ReplyStore = Depends(get_reply_store),
    client: GmailClient | None = Depends(get_optional_gmail_client),
) -> None:
    try:
        await mark_reply_read(client, store, reply_id)
    except LeadflowError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@inbox_router.delete("/replies/{reply_id}", status_code=204)
async def remove_reply(
    reply_id: uuid.UUID,
    store: ReplyStore = Depends(get_reply_store),
    client: GmailClient = Depends(get_gmail_client),
) -> None:
    """Delete a reply in Gmail and locally. A later sync will not bring it back."""
    try:
        await delete_reply(client, store, reply_id)
    except LeadflowError as e:
        logger.warning(
            "Reply deletion failed",
            extra={"reply_id": str(reply_id), "error_code": e.error_code, "error": e.message}
        )
        raise HTTPException(status_code=e.status_code, detail=e.message)


@inbox_router.post("/send", response_model=SendEmailResponse)
async def send_email(
    request: SendEmailRequest,
    store: ReplyStore = Depends(get_reply_store),
    client: GmailClient = Depends(get_gmail_client),
) -> SendEmailResponse:
    """Send an email through Gmail and track it so replies are recognized."""
    message = OutgoingMessage(**request.model_dump())
    try:
        result = await send_tracked_email(client, store, message)
    except LeadflowError as e:
        logger.error(
            "Send failed",
            extra={"error_code": e.error_code, "error": e.message}
        )
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return SendEmailResponse(message_id=result.remote_message_id, thread_id=result.thread_id)


@inbox_router.post("/sync", response_model=SyncResult)
async def sync_now(
    request: SyncRequest | None = None,
    engine: SyncEngine = Depends(get_sync_engine),
) -> SyncResult:
    """Fetch replies now.

    Unlike background syncs, failures are reported: 401 when Gmail must be
    reconnected, 503 when Gmail is unreachable. Returns `skipped: true` when
    another sync is already running.
    """
    page_token = request.page_token if request else None
    try:
        return await engine.sync_now(page_token=page_token)
    except LeadflowError as e:
        logger.warning(
            "Manual sync failed",
            extra={"error_code": e.error_code, "error": e.message}
        )
        raise HTTPException(status_code=e.status_code, detail=e.message)


@inbox_router.get("/sync/status")
async def sync_status(engine: SyncEngine = Depends(get_sync_engine)) -> dict[str, Any]:
    return engine.status()
