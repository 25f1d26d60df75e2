"""Decide whether an inbound message is a reply to something we sent.

In-Reply-To headers are set inconsistently across mail clients, so the test
is thread co-membership: a message is a reply when its Gmail thread also
contains a message this app sent.
"""

import logging
from collections.abc import Collection
from typing import Protocol

from app.integrations.gmail_service import MailMessage

logger = logging.getLogger(__name__)


class ThreadLookup(Protocol):
    async def fetch_thread_members(self, thread_id: str) -> list[str]: ...


class ReplyFilter:
    def __init__(self, client: ThreadLookup):
        self.client = client

    async def is_reply_to_us(self, message: MailMessage, sent_message_ids: Collection[str]) -> bool:
        # Nothing sent from this identity means nothing can be a reply to us
        if not sent_message_ids:
            return False

        if message.id in sent_message_ids or not message.thread_id:
            return False

        members = await self.client.fetch_thread_members(message.thread_id)
        is_reply = any(member_id in sent_message_ids for member_id in members if member_id != message.id)

        logger.debug(
            "Reply filter decision",
            extra={"message_id": message.id, "thread_id": message.thread_id, "is_reply": is_reply}
        )
        return is_reply
