"""Gmail push notification webhook.

Google Cloud Pub/Sub delivers a push request here whenever the watched inbox
changes. The request is acknowledged immediately; the notification is handed
to the sync engines through the push channel.
"""

import logging
import secrets
from typing import Any
from fastapi import APIRouter, Body, Depends, HTTPException

from app.api.deps import get_push_channel
from app.core.config import settings
from app.sync.notifications import InvalidPushPayload, PushChannel, parse_pubsub_push

logger = logging.getLogger(__name__)

webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@webhooks_router.post("/gmail")
async def gmail_push(
    token: str = "",
    payload: dict[str, Any] = Body(...),
    channel: PushChannel = Depends(get_push_channel),
) -> dict[str, Any]:
    """Receive a Pub/Sub push for the watched mailbox.

    Responses:
        403: `token` does not match PUBSUB_VERIFICATION_TOKEN
        400: the envelope has no message
        200: everything else, including undecodable data, so Pub/Sub does
             not redeliver a notification that can never succeed
    """
    expected = settings.PUBSUB_VERIFICATION_TOKEN
    if expected and not secrets.compare_digest(token, expected):
        logger.warning("Rejected Gmail webhook with invalid token")
        raise HTTPException(status_code=403, detail="Invalid verification token")

    if not payload.get("message"):
        logger.warning("Gmail webhook without Pub/Sub message")
        raise HTTPException(status_code=400, detail="Bad request - no message")

    try:
        notification = parse_pubsub_push(payload)
    except InvalidPushPayload as e:
        logger.error("Undecodable Gmail push notification", extra={"error": str(e)})
        return {"success": False, "error": "Invalid notification data"}

    delivered = channel.publish(notification)
    return {"success": True, "history_id": notification.history_id, "delivered": delivered}
