"""Integration tests for the Gmail push webhook."""

import base64
import json

import pytest
from fastapi.testclient import TestClient

TOKEN = "test-verification-token"


def pubsub_body(data: dict | bytes) -> dict:
    raw = data if isinstance(data, bytes) else json.dumps(data).encode()
    return {
        "message": {"data": base64.b64encode(raw).decode(), "messageId": "1234"},
        "subscription": "projects/leadflow/subscriptions/gmail-push",
    }


@pytest.mark.integration
def test_push_is_published(client: TestClient):
    queue = client.app.state.push_channel.subscribe()

    response = client.post(
        "/api/webhooks/gmail",
        params={"token": TOKEN},
        json=pubsub_body({"emailAddress": "me@example.com", "historyId": 4242}),
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "history_id": "4242", "delivered": 1}
    notification = queue.get_nowait()
    assert notification.history_id == "4242"
    assert notification.source_address == "me@example.com"


@pytest.mark.integration
def test_invalid_token_is_rejected(client: TestClient):
    body = pubsub_body({"historyId": 1})

    assert client.post("/api/webhooks/gmail", params={"token": "wrong"}, json=body).status_code == 403
    assert client.post("/api/webhooks/gmail", json=body).status_code == 403


@pytest.mark.integration
def test_missing_message_is_bad_request(client: TestClient):
    response = client.post("/api/webhooks/gmail", params={"token": TOKEN}, json={"subscription": "x"})

    assert response.status_code == 400


@pytest.mark.integration
def test_undecodable_data_is_acknowledged(client: TestClient):
    response = client.post("/api/webhooks/gmail", params={"token": TOKEN}, json=pubsub_body(b"garbage"))

    assert response.status_code == 200
    assert response.json()["success"] is False
