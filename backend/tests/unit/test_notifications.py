"""Unit tests for Pub/Sub push decoding and the push channel."""

import base64
import json

import pytest

from app.sync.notifications import InvalidPushPayload, PushChannel, PushNotification, parse_pubsub_push


def envelope(data: dict | bytes) -> dict:
    raw = data if isinstance(data, bytes) else json.dumps(data).encode()
    return {
        "message": {"data": base64.b64encode(raw).decode(), "messageId": "1"},
        "subscription": "projects/p/subscriptions/gmail",
    }


class TestParsePubsubPush:
    """Test parse_pubsub_push."""

    def test_decodes_history_id_and_address(self):
        notification = parse_pubsub_push(envelope({"emailAddress": "me@example.com", "historyId": 12345}))

        assert notification.history_id == "12345"
        assert notification.source_address == "me@example.com"
        assert notification.timestamp > 0

    def test_missing_message(self):
        with pytest.raises(InvalidPushPayload):
            parse_pubsub_push({"subscription": "x"})

    def test_undecodable_data(self):
        with pytest.raises(InvalidPushPayload):
            parse_pubsub_push(envelope(b"not json"))

    def test_missing_history_id(self):
        with pytest.raises(InvalidPushPayload):
            parse_pubsub_push(envelope({"emailAddress": "me@example.com"}))


class TestPushChannel:
    """Test fan-out to subscribers."""

    def test_publish_reaches_every_subscriber(self):
        channel = PushChannel()
        first = channel.subscribe()
        second = channel.subscribe()
        notification = PushNotification(history_id="7")

        assert channel.publish(notification) == 2
        assert first.get_nowait() == notification
        assert second.get_nowait() == notification

    def test_unsubscribe(self):
        channel = PushChannel()
        queue = channel.subscribe()

        channel.unsubscribe(queue)
        channel.unsubscribe(queue)

        assert channel.subscriber_count == 0
        assert channel.publish(PushNotification(history_id="7")) == 0


class TestPublishTime:
    """Test that the notification timestamp comes from the Pub/Sub envelope."""

    def test_redelivery_has_same_timestamp(self):
        body = envelope({"emailAddress": "me@example.com", "historyId": 100})
        body["message"]["publishTime"] = "2025-03-01T09:30:15.123Z"

        first = parse_pubsub_push(body)
        redelivered = parse_pubsub_push(body)

        assert first.timestamp == redelivered.timestamp == 1740821415.123
        assert first.message_id == "1"

    def test_invalid_publish_time(self):
        body = envelope({"historyId": 100})
        body["message"]["publishTime"] = "yesterday"

        with pytest.raises(InvalidPushPayload):
            parse_pubsub_push(body)
