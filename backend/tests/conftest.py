"""Pytest configuration and shared fixtures."""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Generator

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing app
os.environ.update({
    "DATABASE_URL": "sqlite://",
    "OPENAI_API_KEY": "sk-test-key",
    "OTEL_TRACES_EXPORTER": "none",
    "GOOGLE_CLIENT_ID": "",
    "GOOGLE_CLIENT_SECRET": "",
    "GMAIL_REFRESH_TOKEN": "",
    "GMAIL_ACCESS_TOKEN": "",
    "GMAIL_PUBSUB_TOPIC": "",
    "PUBSUB_VERIFICATION_TOKEN": "test-verification-token",
    "SYNC_ENABLED": "false",
})

from sqlalchemy.engine import Engine  # noqa: E402

from app.core.db import build_engine, init_db  # noqa: E402
from app.inbox.reply_store import ReplyStore  # noqa: E402
from app.integrations.gmail_service import (  # noqa: E402
    MailMessage,
    MessageStub,
    OutgoingMessage,
    SendResult,
    WatchSubscription,
)
from app.models.inbox import SentMessage  # noqa: E402


class FakeMailbox:
    """In-memory stand-in for GmailClient.

    Messages live in `messages`, thread membership in `threads`, and the
    candidate listing is `inbox` in order. Every call is appended to `calls`;
    an exception placed in `failures[<method name>]` is raised by that method.
    """

    def __init__(self):
        self.messages: dict[str, MailMessage] = {}
        self.threads: dict[str, list[str]] = {}
        self.inbox: list[str] = []
        self.history: list[dict[str, Any]] = []
        self.history_id = 100
        self.cursor_expired = False
        self.watch_result: WatchSubscription | None = None
        self.failures: dict[str, Exception] = {}
        self.detail_failures: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.sent: list[OutgoingMessage] = []
        self.trashed: list[str] = []
        self.marked_read: list[str] = []

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.failures:
            raise self.failures[operation]

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    # ---- scenario builders ----

    def add_sent(self, message_id: str, thread_id: str) -> None:
        self.threads.setdefault(thread_id, []).append(message_id)

    def add_message(
        self,
        message_id: str,
        thread_id: str,
        sender: str = "lead@example.com",
        subject: str = "Re: Hello",
        received_at: datetime | None = None,
        body: str = "Thanks, sounds good!",
        in_inbox: bool = True,
    ) -> MailMessage:
        message = MailMessage(
            id=message_id,
            thread_id=thread_id,
            sender_name="Lead Person",
            sender_address=sender,
            subject=subject,
            body=body,
            received_at=received_at or datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc),
            read=False,
            label_ids=["INBOX", "UNREAD"],
        )
        self.messages[message_id] = message
        self.threads.setdefault(thread_id, []).append(message_id)
        if in_inbox:
            self.inbox.append(message_id)
        return message

    def record_history(self, message_id: str, labels: tuple[str, ...] = ("INBOX", "UNREAD")) -> str:
        """Append a messageAdded history record and advance the mailbox history id."""
        self.history_id += 1
        message = self.messages.get(message_id)
        self.history.append({
            "id": str(self.history_id),
            "messagesAdded": [{
                "message": {
                    "id": message_id,
                    "threadId": message.thread_id if message else "",
                    "labelIds": list(labels),
                }
            }],
        })
        return str(self.history_id)

    # ---- mailbox operations ----

    async def list_candidate_messages(self, query, page_token=None, max_results=50):
        self._call("list_candidate_messages")
        start = int(page_token or 0)
        page = self.inbox[start:start + max_results]
        next_token = str(start + max_results) if start + max_results < len(self.inbox) else None
        return [MessageStub(id=i, thread_id=self.messages[i].thread_id) for i in page], next_token

    async def fetch_message_detail(self, message_id):
        self._call("fetch_message_detail")
        if message_id in self.detail_failures:
            raise self.detail_failures[message_id]
        return self.messages[message_id]

    async def fetch_thread_members(self, thread_id):
        self._call("fetch_thread_members")
        return list(self.threads.get(thread_id, []))

    async def get_current_history_id(self):
        self._call("get_current_history_id")
        return str(self.history_id)

    async def fetch_history_since(self, cursor):
        self._call("fetch_history_since")
        if self.cursor_expired:
            return None
        return [record for record in self.history if int(record["id"]) > int(cursor)]

    async def register_watch(self, topic):
        self._call("register_watch")
        return self.watch_result

    async def cancel_watch(self):
        self._call("cancel_watch")

    async def send(self, message):
        self._call("send")
        self.sent.append(message)
        message_id = f"sent-{len(self.sent)}"
        thread_id = message.thread_id or f"thread-{message_id}"
        self.add_sent(message_id, thread_id)
        return SendResult(remote_message_id=message_id, thread_id=thread_id)

    async def trash(self, remote_message_id):
        self._call("trash")
        self.trashed.append(remote_message_id)

    async def mark_read(self, remote_message_id):
        self._call("mark_read")
        self.marked_read.append(remote_message_id)


@pytest.fixture
def db_engine() -> Generator[Engine, None, None]:
    """Fresh in-memory SQLite database per test."""
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine: Engine) -> ReplyStore:
    return ReplyStore(db_engine, sent_retention=1000)


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def watch_subscription() -> WatchSubscription:
    return WatchSubscription(
        history_id="500",
        expires_at=datetime.now(timezone.utc) + timedelta(days=7),
    )


@pytest.fixture
def track_sent(store: ReplyStore):
    """Record a message id as sent by the app."""
    async def _track(message_id: str, thread_id: str, recipient: str = "lead@example.com") -> None:
        await store.add_sent_message_id(SentMessage(
            message_id=message_id,
            thread_id=thread_id,
            recipient_address=recipient,
        ))
    return _track


@pytest.fixture
def client(store: ReplyStore, mailbox: FakeMailbox) -> Generator[TestClient, None, None]:
    """FastAPI test client wired to the in-memory store and fake mailbox."""
    from app.main import app
    from app.sync.engine import SyncEngine

    with TestClient(app) as test_client:
        app.state.reply_store = store
        app.state.gmail_client = mailbox
        app.state.sync_engine = SyncEngine(mailbox, store)
        yield test_client
