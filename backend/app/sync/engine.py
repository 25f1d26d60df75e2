"""Reply sync engine.

Keeps the reply store in step with the Gmail inbox using two strategies:

- full sync: list candidate inbound messages with a search query and test
  each one against the reply filter
- incremental sync: read the Gmail history log since the last cursor and test
  only newly added inbox messages

and schedules them either from Gmail push notifications (with a low-frequency
backup sync) or, when push is unavailable, with adaptive polling.

All scheduling state lives on the engine instance. Only one top-level sync
runs at a time; a trigger that arrives while a sync is in flight is dropped.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Protocol
from pydantic import BaseModel

from app.core.config import Settings
from app.core.errors import AuthExpiredError, DuplicateReplyError, LeadflowError
from app.core.tracing import get_tracer
from app.inbox.reply_store import ReplyStore
from app.integrations.gmail_service import MailMessage, MessageStub, WatchSubscription
from app.models.inbox import IncomingEmail, tombstone_key
from app.sync.batching import run_batched
from app.sync.notifications import PushChannel, PushNotification
from app.sync.polling import AdaptivePollInterval
from app.sync.reply_filter import ReplyFilter

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

DEFAULT_CANDIDATE_QUERY = "in:inbox -from:me is:unread newer_than:30d"

# History events carrying any of these labels are never replies
EXCLUDED_LABELS = frozenset({"SENT", "DRAFT", "SPAM", "TRASH"})


class MailboxClient(Protocol):
    async def list_candidate_messages(
        self, query: str, page_token: str | None = None, max_results: int = 50
    ) -> tuple[list[MessageStub], str | None]: ...

    async def fetch_message_detail(self, message_id: str) -> MailMessage: ...

    async def fetch_thread_members(self, thread_id: str) -> list[str]: ...

    async def get_current_history_id(self) -> str: ...

    async def fetch_history_since(self, cursor: str) -> list[dict[str, Any]] | None: ...

    async def register_watch(self, topic: str) -> WatchSubscription | None: ...

    async def cancel_watch(self) -> None: ...


class SyncConfig(BaseModel):
    topic: str | None = None
    mailbox_address: str | None = None
    candidate_query: str = DEFAULT_CANDIDATE_QUERY
    page_size: int = 50
    max_pages: int = 4
    batch_size: int = 10
    poll_initial: float = 15.0
    poll_floor: float = 10.0
    poll_ceiling: float = 60.0
    poll_growth: float = 1.5
    poll_error_growth: float = 2.0
    backup_interval: float = 300.0
    watch_renewal_lead: timedelta = timedelta(hours=24)
    min_renewal_delay: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncConfig":
        return cls(
            topic=settings.GMAIL_PUBSUB_TOPIC or None,
            mailbox_address=settings.GMAIL_ADDRESS or None,
            candidate_query=settings.SYNC_CANDIDATE_QUERY,
            page_size=settings.SYNC_PAGE_SIZE,
            max_pages=settings.SYNC_MAX_PAGES,
            batch_size=settings.SYNC_BATCH_SIZE,
            poll_initial=settings.POLL_INITIAL_SECONDS,
            poll_floor=settings.POLL_FLOOR_SECONDS,
            poll_ceiling=settings.POLL_CEILING_SECONDS,
            poll_growth=settings.POLL_GROWTH,
            poll_error_growth=settings.POLL_ERROR_GROWTH,
            backup_interval=settings.PUSH_BACKUP_INTERVAL_SECONDS,
            watch_renewal_lead=timedelta(hours=settings.WATCH_RENEWAL_LEAD_HOURS),
        )


class SyncResult(BaseModel):
    mode: Literal["full", "incremental"]
    new_count: int = 0
    candidates: int = 0
    next_page_token: str | None = None
    skipped: bool = False


def inbound_message_ids(history: Iterable[dict[str, Any]]) -> list[str]:
    """Ids of messages added to the inbox by someone else, in history order."""
    message_ids: list[str] = []
    seen: set[str] = set()

    for record in history:
        for added in record.get("messagesAdded", []):
            message = added.get("message") or {}
            message_id = message.get("id")
            labels = set(message.get("labelIds") or [])

            if not message_id or message_id in seen:
                continue
            if "INBOX" not in labels or labels & EXCLUDED_LABELS:
                continue

            seen.add(message_id)
            message_ids.append(message_id)

    return message_ids


def _is_older(candidate: str, current: str) -> bool:
    # Gmail history ids are decimal strings; anything else is treated as opaque
    if candidate.isdigit() and current.isdigit():
        return int(candidate) < int(current)
    return False


class SyncEngine:
    def __init__(
        self,
        client: MailboxClient,
        store: ReplyStore,
        config: SyncConfig | None = None,
        push_channel: PushChannel | None = None,
    ):
        self.client = client
        self.store = store
        self.config = config or SyncConfig()
        self.reply_filter = ReplyFilter(client)
        self.poll_interval = AdaptivePollInterval(
            initial=self.config.poll_initial,
            floor=self.config.poll_floor,
            ceiling=self.config.poll_ceiling,
            growth=self.config.poll_growth,
            error_growth=self.config.poll_error_growth,
        )

        self._push_channel = push_channel
        self._push_queue: asyncio.Queue[PushNotification] | None = None
        self._cursor: str | None = None
        self._expected_cursor: str | None = None
        self._watch: WatchSubscription | None = None
        self._busy = False
        self._running = False
        self._last_push_timestamp = 0.0
        self._last_push_history_id: str | None = None
        self._tasks: dict[str, asyncio.Task] = {}

        self.last_result: SyncResult | None = None
        self.last_error: str | None = None
        self.last_synced_at: datetime | None = None

    # ---- read-only state ----

    @property
    def cursor(self) -> str | None:
        return self._cursor

    @property
    def watch(self) -> WatchSubscription | None:
        return self._watch

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def running(self) -> bool:
        return self._running

    @property
    def mode(self) -> Literal["stopped", "starting", "push", "polling"]:
        if not self._running:
            return "stopped"
        if self._watch is not None:
            return "push"
        poll_task = self._tasks.get("poll")
        if poll_task is not None and not poll_task.done():
            return "polling"
        return "starting"

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "mode": self.mode,
            "busy": self._busy,
            "cursor": self._cursor,
            "expected_cursor": self._expected_cursor,
            "watch_expires_at": self._watch.expires_at.isoformat() if self._watch else None,
            "poll_interval_seconds": self.poll_interval.current,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "last_new_count": self.last_result.new_count if self.last_result else None,
            "last_error": self.last_error,
        }

    # ---- cursor ----

    def _advance_cursor(self, history_id: str | None) -> None:
        if not history_id:
            return
        if self._cursor and _is_older(history_id, self._cursor):
            logger.warning(
                "Ignoring older history id",
                extra={"history_id": history_id, "cursor": self._cursor}
            )
            return
        self._cursor = history_id
        if self._expected_cursor and not _is_older(history_id, self._expected_cursor):
            self._expected_cursor = None

    # ---- shared sync steps ----

    async def _evaluate_candidate(self, message_id: str, sent_ids: set[str]) -> MailMessage | None:
        message = await self.client.fetch_message_detail(message_id)
        if await self.reply_filter.is_reply_to_us(message, sent_ids):
            return message
        return None

    async def _collect_replies(self, message_ids: list[str], sent_ids: set[str]) -> list[MailMessage]:
        results = await run_batched(
            message_ids,
            lambda message_id: self._evaluate_candidate(message_id, sent_ids),
            batch_size=self.config.batch_size,
        )

        replies: list[MailMessage] = []
        for result in results:
            if result.error is not None:
                # Credentials are not per-message; retrying the rest is pointless
                if isinstance(result.error, AuthExpiredError):
                    raise result.error
                logger.warning(
                    "Skipping candidate message",
                    extra={"message_id": result.item, "error": str(result.error)}
                )
            elif result.value is not None:
                replies.append(result.value)
        return replies

    async def _persist_replies(self, replies: list[MailMessage], tombstones: set[str]) -> int:
        new_count = 0
        for message in replies:
            key = tombstone_key(message.sender_address, message.subject, message.received_at)
            if key in tombstones or message.id in tombstones:
                logger.info("Skipping deleted reply", extra={"message_id": message.id})
                continue

            try:
                await self.store.add_reply(IncomingEmail(
                    sender_name=message.sender_name,
                    sender_address=message.sender_address,
                    subject=message.subject,
                    body=message.body,
                    received_at=message.received_at,
                    read=message.read,
                    remote_message_id=message.id,
                    thread_id=message.thread_id,
                ))
            except DuplicateReplyError:
                continue
            new_count += 1
        return new_count

    # ---- strategies ----

    async def run_full_sync(self, page_token: str | None = None) -> SyncResult:
        """Scan candidate inbox messages and import the replies among them.

        Returns a result with `next_page_token` set when the scan stopped at
        `max_pages` before the end of the listing.
        """
        with tracer.start_as_current_span("sync.full") as span:
            sent_ids = set(await self.store.get_sent_message_ids())
            if not sent_ids:
                logger.info("No sent messages tracked yet; nothing can be a reply")
                return SyncResult(mode="full")

            tombstones = await self.store.get_deleted_tombstone_keys()
            history_id = await self.client.get_current_history_id()

            message_ids: list[str] = []
            seen: set[str] = set()
            token = page_token
            for _ in range(self.config.max_pages):
                stubs, token = await self.client.list_candidate_messages(
                    self.config.candidate_query,
                    page_token=token,
                    max_results=self.config.page_size,
                )
                for stub in stubs:
                    if stub.id not in seen and stub.id not in tombstones:
                        seen.add(stub.id)
                        message_ids.append(stub.id)
                if not token:
                    break

            replies = await self._collect_replies(message_ids, sent_ids)
            new_count = await self._persist_replies(replies, tombstones)
            self._advance_cursor(history_id)

            span.set_attribute("candidates", len(message_ids))
            span.set_attribute("new_count", new_count)
            logger.info(
                "Full sync complete",
                extra={
                    "candidates": len(message_ids),
                    "replies": len(replies),
                    "new_count": new_count,
                    "sent_tracked": len(sent_ids),
                    "more_pages": bool(token),
                }
            )
            return SyncResult(
                mode="full",
                new_count=new_count,
                candidates=len(message_ids),
                next_page_token=token,
            )

    async def run_incremental_sync(self) -> SyncResult:
        """Import replies added since the cursor, falling back to a full sync.

        The fallback runs when there is no cursor yet, when Gmail reports the
        cursor expired, or when anything in the incremental path fails.
        """
        latest: str | None = None

        with tracer.start_as_current_span("sync.incremental") as span:
            try:
                latest = await self.client.get_current_history_id()

                if self._cursor is None:
                    logger.info("No sync cursor yet; running full sync")
                else:
                    history = await self.client.fetch_history_since(self._cursor)
                    if history is None:
                        logger.warning("Sync cursor expired; running full sync", extra={"cursor": self._cursor})
                        self._cursor = None
                    else:
                        candidate_ids = inbound_message_ids(history)
                        new_count = 0

                        if candidate_ids:
                            sent_ids = set(await self.store.get_sent_message_ids())
                            if sent_ids:
                                tombstones = await self.store.get_deleted_tombstone_keys()
                                candidate_ids = [i for i in candidate_ids if i not in tombstones]
                                replies = await self._collect_replies(candidate_ids, sent_ids)
                                new_count = await self._persist_replies(replies, tombstones)

                        self._advance_cursor(latest)

                        span.set_attribute("candidates", len(candidate_ids))
                        span.set_attribute("new_count", new_count)
                        logger.info(
                            "Incremental sync complete",
                            extra={
                                "history_records": len(history),
                                "candidates": len(candidate_ids),
                                "new_count": new_count,
                                "cursor": self._cursor,
                            }
                        )
                        return SyncResult(mode="incremental", new_count=new_count, candidates=len(candidate_ids))

            except LeadflowError as e:
                logger.warning(
                    "Incremental sync failed; falling back to full sync",
                    extra={"error_code": e.error_code, "error": e.message}
                )
            except Exception as e:
                logger.exception(
                    "Unexpected error in incremental sync; falling back to full sync",
                    extra={"error_type": type(e).__name__}
                )

        result = await self.run_full_sync()
        if self._cursor is None:
            # Sent set was empty so the full sync never read a cursor
            self._advance_cursor(latest)
        return result

    async def _sync_by_state(self) -> SyncResult:
        if self._cursor is None:
            return await self.run_full_sync()
        return await self.run_incremental_sync()

    # ---- exclusion and triggers ----

    async def _run_exclusive(
        self,
        runner: Callable[[], Awaitable[SyncResult]],
        trigger: str,
    ) -> SyncResult | None:
        if self._busy:
            logger.info("Sync already in progress; dropping trigger", extra={"trigger": trigger})
            return None

        self._busy = True
        try:
            result = await runner()
        except Exception as e:
            self.last_error = str(e)
            raise
        finally:
            self._busy = False

        self.last_result = result
        self.last_error = None
        self.last_synced_at = datetime.now(timezone.utc)
        return result

    async def _background_sync(
        self,
        runner: Callable[[], Awaitable[SyncResult]],
        trigger: str,
    ) -> SyncResult | None:
        """Run a sync for the scheduler; failures are logged, never raised.

        The sync is shielded so that stopping the engine lets an in-flight
        sync finish instead of aborting it halfway.
        """
        try:
            return await asyncio.shield(self._run_exclusive(runner, trigger))
        except LeadflowError as e:
            logger.warning(
                "Background sync failed",
                extra={"trigger": trigger, "error_code": e.error_code, "error": e.message}
            )
        except Exception as e:
            logger.exception("Unexpected background sync failure", extra={"trigger": trigger, "error_type": type(e).__name__})
        return None

    async def sync_now(self, page_token: str | None = None) -> SyncResult:
        """Manual "fetch now". Unlike background syncs, failures propagate.

        Passing `page_token` continues a capped full scan.
        """
        if page_token is not None:
            result = await self._run_exclusive(lambda: self.run_full_sync(page_token), "manual")
        else:
            result = await self._run_exclusive(self._sync_by_state, "manual")

        if result is None:
            return SyncResult(mode="incremental" if self._cursor else "full", skipped=True)
        return result

    def _is_replay(self, notification: PushNotification) -> bool:
        if notification.timestamp < self._last_push_timestamp:
            return True

        last = self._last_push_history_id
        if last is None:
            return False
        if last.isdigit() and notification.history_id.isdigit():
            return int(notification.history_id) <= int(last)
        return notification.history_id == last

    async def handle_push_notification(self, notification: PushNotification) -> SyncResult | None:
        """React to a Gmail push notification with an immediate incremental sync.

        A notification published before the last one handled, or carrying a
        history id that is not newer, is a replay and is ignored, as is a
        notification for a different mailbox.
        """
        if self._is_replay(notification):
            logger.info(
                "Ignoring replayed push notification",
                extra={"history_id": notification.history_id, "pubsub_message_id": notification.message_id}
            )
            return None

        mailbox = self.config.mailbox_address
        if mailbox and notification.source_address and notification.source_address.lower() != mailbox.lower():
            logger.warning("Ignoring push notification for another mailbox")
            return None

        self._last_push_timestamp = notification.timestamp
        self._last_push_history_id = notification.history_id
        if not self._cursor or not _is_older(notification.history_id, self._cursor):
            self._expected_cursor = notification.history_id

        logger.info("Push notification received", extra={"history_id": notification.history_id})
        return await self._background_sync(self.run_incremental_sync, "push")

    async def poll_once(self) -> float:
        """Run one polling sync and return the delay before the next one."""
        try:
            result = await asyncio.shield(self._run_exclusive(self._sync_by_state, "poll"))
        except Exception as e:
            logger.warning("Poll failed; backing off", extra={"error": str(e), "error_type": type(e).__name__})
            return self.poll_interval.record_error()

        if result is None:
            return self.poll_interval.current

        if result.new_count:
            logger.info("New replies found; polling faster", extra={"new_count": result.new_count})
        return self.poll_interval.record_result(result.new_count)

    # ---- scheduling loops ----

    def _spawn(self, name: str, coro: Awaitable[Any]) -> None:
        self._tasks[name] = asyncio.create_task(coro, name=f"sync-engine-{name}")

    def _cancel_task(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _poll_loop(self) -> None:
        delay = self.poll_interval.current
        while self._running:
            await asyncio.sleep(delay)
            delay = await self.poll_once()

    async def _backup_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.backup_interval)
            logger.info("Backup sync check")
            await self._background_sync(self.run_incremental_sync, "backup")

    async def _consume_push(self, queue: asyncio.Queue[PushNotification]) -> None:
        """Start a push sync per notification, dropping those that overlap one.

        The consumer never waits for a sync, so notifications arriving while
        a sync is in flight are discarded instead of piling up in the queue.
        Only the newest of several queued notifications is kept.
        """
        while True:
            notification = await queue.get()
            while not queue.empty():
                notification = queue.get_nowait()

            push_sync = self._tasks.get("push-sync")
            if self._busy or (push_sync is not None and not push_sync.done()):
                logger.info(
                    "Sync already in progress; dropping push notification",
                    extra={"history_id": notification.history_id}
                )
                continue

            self._spawn("push-sync", self.handle_push_notification(notification))

    def _start_polling(self) -> None:
        logger.info("Using adaptive polling", extra={"interval_seconds": self.poll_interval.current})
        self._cancel_task("backup")
        self._spawn("poll", self._poll_loop())

    async def _establish_watch(self) -> bool:
        try:
            watch = await self.client.register_watch(self.config.topic)
        except LeadflowError as e:
            logger.error("Gmail watch registration failed", extra={"error_code": e.error_code, "error": e.message})
            watch = None

        if watch is None:
            return False

        self._watch = watch
        if self._cursor is None:
            self._advance_cursor(watch.history_id)
        self._schedule_renewal()
        return True

    def _schedule_renewal(self) -> None:
        renew_at = self._watch.expires_at - self.config.watch_renewal_lead
        delay = max((renew_at - datetime.now(timezone.utc)).total_seconds(), self.config.min_renewal_delay)
        logger.info("Gmail watch renewal scheduled", extra={"renew_in_seconds": round(delay)})
        self._cancel_task("renewal")
        self._spawn("renewal", self._renew_watch_after(delay))

    async def _renew_watch_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        logger.info("Renewing Gmail watch")
        if await self._establish_watch():
            return

        logger.warning("Gmail watch renewal failed; falling back to polling")
        self._watch = None
        self._start_polling()

    async def _startup(self) -> None:
        await self._background_sync(self.run_full_sync, "startup")

        if self.config.topic and await self._establish_watch():
            logger.info("Using Gmail push notifications", extra={"backup_interval_seconds": self.config.backup_interval})
            self._spawn("backup", self._backup_loop())
        else:
            self._start_polling()

    # ---- lifecycle ----

    async def start(self) -> None:
        """Begin monitoring: one full sync now, then push or polling."""
        if self._running:
            return

        self._running = True
        self.poll_interval.reset()
        logger.info("Starting reply sync engine", extra={"push_topic": bool(self.config.topic)})

        if self._push_channel is not None:
            self._push_queue = self._push_channel.subscribe()
            self._spawn("push", self._consume_push(self._push_queue))

        self._spawn("startup", self._startup())

    async def stop(self) -> None:
        """Stop timers, pending watch calls and the active watch. Safe to repeat."""
        was_running = self._running
        self._running = False

        tasks = [task for task in self._tasks.values() if not task.done() and task is not asyncio.current_task()]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._push_channel is not None and self._push_queue is not None:
            self._push_channel.unsubscribe(self._push_queue)
            self._push_queue = None

        if self._watch is not None:
            self._watch = None
            try:
                await self.client.cancel_watch()
            except LeadflowError as e:
                logger.warning("Failed to cancel Gmail watch", extra={"error": e.message})

        if was_running:
            logger.info("Reply sync engine stopped")
