"""Database models for reply tracking.

Three tables back the reply store:

- ``incoming_emails``: replies imported by the sync engine. ``dedup_key`` is
  unique so that concurrent app instances can never import the same reply
  twice.
- ``sent_messages``: ids of messages this app sent, used to recognize replies
  by thread membership.
- ``deleted_replies``: tombstones that stop a later full sync from
  re-importing a reply the user deleted.
"""

import re
import uuid
from datetime import datetime, timezone
from sqlmodel import Field, SQLModel, Column, Text


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_timestamp(value: datetime) -> str:
    """Render a timestamp as naive UTC with second precision.

    SQLite drops tzinfo on the way back out, so keys built from stored rows
    and keys built from freshly fetched messages must agree on a format that
    ignores it.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="seconds")


_TOMBSTONE_UNSAFE = re.compile(r"[.#$\[\]/]")


def tombstone_key(sender_address: str, subject: str, received_at: datetime) -> str:
    """Sanitized composite key identifying a reply by sender, subject and time."""
    raw = f"{sender_address.strip().lower()}_{subject}_{normalize_timestamp(received_at)}"
    return _TOMBSTONE_UNSAFE.sub("_", raw)


def reply_dedup_key(
    remote_message_id: str | None,
    sender_address: str,
    subject: str,
    received_at: datetime,
) -> str:
    """Uniqueness key: the remote message id when known, else the triple."""
    if remote_message_id:
        return f"id:{remote_message_id}"
    return f"triple:{tombstone_key(sender_address, subject, received_at)}"


class IncomingEmail(SQLModel, table=True):
    """A reply to a message this app sent."""

    __tablename__ = "incoming_emails"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)

    sender_name: str = ""
    sender_address: str = Field(index=True)
    subject: str = ""
    body: str = Field(default="", sa_column=Column(Text))
    received_at: datetime = Field(index=True)
    read: bool = Field(default=False)

    # Gmail references
    remote_message_id: str | None = Field(default=None, index=True)
    thread_id: str | None = Field(default=None, index=True)

    dedup_key: str = Field(
        default="",
        unique=True,
        description="id:<remote id> or triple:<sender_subject_time>, see reply_dedup_key"
    )

    created_at: datetime = Field(default_factory=utcnow)


class SentMessage(SQLModel, table=True):
    """A message sent through Gmail by this app. Immutable once written."""

    __tablename__ = "sent_messages"

    message_id: str = Field(primary_key=True)
    thread_id: str = Field(index=True)
    recipient_address: str
    sent_at: datetime = Field(default_factory=utcnow, index=True)


class DeletedReply(SQLModel, table=True):
    """Tombstone for a reply the user deleted. Never expires."""

    __tablename__ = "deleted_replies"

    key: str = Field(primary_key=True)
    sender_address: str
    subject: str
    received_at: datetime
    remote_message_id: str | None = Field(default=None, index=True)
    deleted_at: datetime = Field(default_factory=utcnow)
