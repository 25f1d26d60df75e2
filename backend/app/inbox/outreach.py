"""Outbound email and reply actions that touch both Gmail and the reply store."""

import logging
import uuid
from typing import Protocol

from app.core.errors import LeadflowError, ReplyNotFoundError
from app.core.tracing import get_tracer, safe_span_attributes
from app.inbox.reply_store import ReplyStore
from app.integrations.gmail_service import MessageNotFoundError, OutgoingMessage, SendResult
from app.models.inbox import DeletedReply, SentMessage

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class OutboundMailbox(Protocol):
    async def send(self, message: OutgoingMessage) -> SendResult: ...

    async def trash(self, remote_message_id: str) -> None: ...

    async def mark_read(self, remote_message_id: str) -> None: ...


async def send_tracked_email(client: OutboundMailbox, store: ReplyStore, message: OutgoingMessage) -> SendResult:
    """Send an email and remember its id so replies to it can be recognized."""
    with tracer.start_as_current_span("outreach.send") as span:
        span.set_attributes(safe_span_attributes(
            recipient_email=message.to,
            subject=message.subject,
            attachments=len(message.attachments),
        ))

        result = await client.send(message)
        await store.add_sent_message_id(SentMessage(
            message_id=result.remote_message_id,
            thread_id=result.thread_id,
            recipient_address=message.to,
        ))

        span.set_attribute("message_id", result.remote_message_id)
        return result


async def delete_reply(client: OutboundMailbox, store: ReplyStore, reply_id: uuid.UUID) -> DeletedReply:
    """Trash the reply in Gmail, then delete it locally and leave a tombstone.

    A reply already gone from Gmail is still deleted locally. Any other Gmail
    failure aborts before local state changes.
    """
    record = await store.get_reply(reply_id)
    if record is None:
        raise ReplyNotFoundError(f"Reply {reply_id} not found")

    if record.remote_message_id:
        try:
            await client.trash(record.remote_message_id)
        except MessageNotFoundError:
            logger.info("Reply already removed from Gmail", extra={"reply_id": str(reply_id)})

    return await store.delete_reply(reply_id)


async def mark_reply_read(client: OutboundMailbox | None, store: ReplyStore, reply_id: uuid.UUID) -> None:
    record = await store.get_reply(reply_id)
    if record is None:
        raise ReplyNotFoundError(f"Reply {reply_id} not found")

    await store.mark_read(reply_id)

    # The local flag is what the UI shows; Gmail's UNREAD label is a courtesy
    if client is not None and record.remote_message_id:
        try:
            await client.mark_read(record.remote_message_id)
        except LeadflowError as e:
            logger.warning(
                "Failed to mark reply read in Gmail",
                extra={"reply_id": str(reply_id), "error": e.message}
            )
