"""Request dependencies resolving the services built in the app lifespan."""

from fastapi import HTTPException, Request

from app.inbox.reply_store import ReplyStore
from app.integrations.gmail_service import GmailClient
from app.sync.engine import SyncEngine
from app.sync.notifications import PushChannel


def get_reply_store(request: Request) -> ReplyStore:
    return request.app.state.reply_store


def get_push_channel(request: Request) -> PushChannel:
    return request.app.state.push_channel


def get_gmail_client(request: Request) -> GmailClient:
    client = getattr(request.app.state, "gmail_client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="Gmail is not configured.")
    return client


def get_sync_engine(request: Request) -> SyncEngine:
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Gmail is not configured.")
    return engine


def get_optional_gmail_client(request: Request) -> GmailClient | None:
    return getattr(request.app.state, "gmail_client", None)
