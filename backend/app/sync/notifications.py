"""In-process channel carrying Gmail push notifications to sync engines.

The webhook publishes one PushNotification per Pub/Sub delivery; each
subscribed engine receives it on its own queue and treats it as a command to
run an incremental sync.
"""

import asyncio
import base64
import json
import logging
import time
from datetime import datetime
from typing import Any
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class PushNotification(BaseModel):
    history_id: str
    source_address: str = ""
    message_id: str = ""
    timestamp: float = Field(default_factory=time.time)


class InvalidPushPayload(ValueError):
    """Raised when a Pub/Sub push body cannot be decoded."""


def parse_pubsub_push(payload: dict[str, Any]) -> PushNotification:
    """Decode a Pub/Sub push envelope into a PushNotification.

    The envelope looks like::

        {"message": {"data": "<base64 JSON>", "messageId": "...",
                     "publishTime": "2025-03-01T09:30:15.123Z"},
         "subscription": "projects/p/subscriptions/s"}

    and the decoded data is ``{"emailAddress": "...", "historyId": 12345}``.
    Pub/Sub keeps `publishTime` across redeliveries, so it is the
    notification timestamp; receipt time is used only when it is absent.
    """
    message = payload.get("message")
    if not isinstance(message, dict) or not message.get("data"):
        raise InvalidPushPayload("Pub/Sub envelope has no message data")

    try:
        data = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidPushPayload(f"Undecodable Pub/Sub data: {e}") from e

    if not isinstance(data, dict) or not data.get("historyId"):
        raise InvalidPushPayload("Pub/Sub data has no historyId")

    publish_time = message.get("publishTime")
    if publish_time:
        try:
            timestamp = datetime.fromisoformat(publish_time).timestamp()
        except (TypeError, ValueError) as e:
            raise InvalidPushPayload(f"Invalid publishTime: {publish_time!r}") from e
    else:
        timestamp = time.time()

    return PushNotification(
        history_id=str(data["historyId"]),
        source_address=data.get("emailAddress", ""),
        message_id=str(message.get("messageId", "")),
        timestamp=timestamp,
    )


class PushChannel:
    """Fan-out of push notifications to any number of subscribers."""

    def __init__(self):
        self._queues: list[asyncio.Queue[PushNotification]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def subscribe(self) -> asyncio.Queue[PushNotification]:
        queue: asyncio.Queue[PushNotification] = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[PushNotification]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, notification: PushNotification) -> int:
        """Deliver to every subscriber. Returns the number of subscribers reached."""
        for queue in self._queues:
            queue.put_nowait(notification)

        logger.info(
            "Push notification published",
            extra={"history_id": notification.history_id, "subscribers": len(self._queues)}
        )
        return len(self._queues)
