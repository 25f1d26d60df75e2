"""Persistent store for imported replies, sent-message ids and tombstones.

The store is the only state shared between app instances, so it alone
enforces reply uniqueness: a pre-insert lookup catches the common case and
the unique ``dedup_key`` column catches concurrent imports of the same
message. Every write is a single transaction, so a reply is never left
half-written.
"""

import logging
import uuid
from collections.abc import Callable
from typing import Literal
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.core.errors import DuplicateReplyError, ReplyNotFoundError
from app.models.inbox import (
    DeletedReply,
    IncomingEmail,
    SentMessage,
    normalize_timestamp,
    reply_dedup_key,
    tombstone_key,
)

logger = logging.getLogger(__name__)


class ReplyChange(BaseModel):
    """Change notification delivered to store subscribers."""
    kind: Literal["added", "updated", "deleted"]
    reply_id: uuid.UUID


ChangeListener = Callable[[ReplyChange], None]


class ReplyStore:
    def __init__(self, db_engine: Engine, sent_retention: int | None = 1000):
        self.engine = db_engine
        self.sent_retention = sent_retention
        self._listeners: list[ChangeListener] = []

    # ---- live updates ----

    def subscribe(self, on_change: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that unregisters it."""
        self._listeners.append(on_change)

        def unsubscribe() -> None:
            if on_change in self._listeners:
                self._listeners.remove(on_change)

        return unsubscribe

    def _notify(self, kind: Literal["added", "updated", "deleted"], reply_id: uuid.UUID) -> None:
        change = ReplyChange(kind=kind, reply_id=reply_id)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Reply change listener failed", extra={"kind": kind})

    # ---- replies ----

    async def add_reply(self, record: IncomingEmail) -> uuid.UUID:
        """Insert a reply.

        Raises:
            DuplicateReplyError: A reply with the same remote message id, or
                (when the id is unknown) the same sender/subject/received_at,
                already exists.
        """
        record.dedup_key = reply_dedup_key(
            record.remote_message_id,
            record.sender_address,
            record.subject,
            record.received_at,
        )

        with Session(self.engine) as session:
            if self._find_duplicate(session, record):
                raise DuplicateReplyError(f"Reply already stored ({record.dedup_key})")

            reply_id = record.id
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                # Another instance imported the same message between lookup and insert
                session.rollback()
                raise DuplicateReplyError(f"Reply already stored ({record.dedup_key})")
            session.refresh(record)

        logger.info(
            "Stored reply",
            extra={"reply_id": str(reply_id), "remote_message_id": record.remote_message_id}
        )
        self._notify("added", reply_id)
        return reply_id

    @staticmethod
    def _find_duplicate(session: Session, record: IncomingEmail) -> bool:
        if session.exec(
            select(IncomingEmail.id).where(IncomingEmail.dedup_key == record.dedup_key)
        ).first():
            return True

        if record.remote_message_id:
            return False

        # Without a remote id, any stored reply with the same triple counts
        wanted = normalize_timestamp(record.received_at)
        candidates = session.exec(
            select(IncomingEmail.received_at).where(
                func.lower(IncomingEmail.sender_address) == record.sender_address.strip().lower(),
                IncomingEmail.subject == record.subject,
            )
        ).all()
        return any(normalize_timestamp(received_at) == wanted for received_at in candidates)

    async def get_reply(self, reply_id: uuid.UUID) -> IncomingEmail | None:
        with Session(self.engine) as session:
            return session.get(IncomingEmail, reply_id)

    async def list_replies(self, unread_only: bool = False) -> list[IncomingEmail]:
        """Replies, newest first."""
        with Session(self.engine) as session:
            statement = select(IncomingEmail).order_by(col(IncomingEmail.received_at).desc())
            if unread_only:
                statement = statement.where(IncomingEmail.read == False)  # noqa: E712
            return list(session.exec(statement).all())

    async def mark_read(self, reply_id: uuid.UUID) -> None:
        with Session(self.engine) as session:
            record = session.get(IncomingEmail, reply_id)
            if record is None:
                raise ReplyNotFoundError(f"Reply {reply_id} not found")
            if record.read:
                return
            record.read = True
            session.add(record)
            session.commit()

        self._notify("updated", reply_id)

    async def delete_reply(self, reply_id: uuid.UUID) -> DeletedReply:
        """Delete a reply and write its tombstone in the same transaction."""
        with Session(self.engine) as session:
            record = session.get(IncomingEmail, reply_id)
            if record is None:
                raise ReplyNotFoundError(f"Reply {reply_id} not found")

            tombstone = DeletedReply(
                key=tombstone_key(record.sender_address, record.subject, record.received_at),
                sender_address=record.sender_address,
                subject=record.subject,
                received_at=record.received_at,
                remote_message_id=record.remote_message_id,
            )
            tombstone = session.merge(tombstone)
            session.delete(record)
            session.commit()
            session.refresh(tombstone)

        logger.info("Deleted reply", extra={"reply_id": str(reply_id), "tombstone_key": tombstone.key})
        self._notify("deleted", reply_id)
        return tombstone

    async def get_deleted_tombstone_keys(self) -> set[str]:
        """Tombstone keys plus the remote message ids of deleted replies.

        A candidate is suppressed when either its `tombstone_key(...)` or its
        remote message id is in the returned set.
        """
        keys: set[str] = set()
        with Session(self.engine) as session:
            for key, remote_message_id in session.exec(
                select(DeletedReply.key, DeletedReply.remote_message_id)
            ).all():
                keys.add(key)
                if remote_message_id:
                    keys.add(remote_message_id)
        return keys

    # ---- sent messages ----

    async def get_sent_message_ids(self) -> list[str]:
        """Ids of messages this app sent, most recent first."""
        with Session(self.engine) as session:
            statement = select(SentMessage.message_id).order_by(col(SentMessage.sent_at).desc())
            return list(session.exec(statement).all())

    async def add_sent_message_id(self, record: SentMessage) -> None:
        """Record a sent message. Re-recording an existing id is a no-op."""
        with Session(self.engine) as session:
            if session.get(SentMessage, record.message_id) is None:
                session.add(record)
                session.commit()
                logger.info(
                    "Tracking sent message",
                    extra={"message_id": record.message_id, "thread_id": record.thread_id}
                )

        if self.sent_retention:
            await self.prune_sent_messages(self.sent_retention)

    async def prune_sent_messages(self, keep: int) -> int:
        """Keep only the `keep` most recently sent ids. Returns the number removed."""
        with Session(self.engine) as session:
            stale = session.exec(
                select(SentMessage)
                .order_by(col(SentMessage.sent_at).desc())
                .offset(keep)
            ).all()
            if not stale:
                return 0

            for record in stale:
                session.delete(record)
            session.commit()

        logger.info("Pruned sent message ids", extra={"removed": len(stale), "kept": keep})
        return len(stale)
