import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware
from sqlmodel import Session, text

from app.core.config import settings
from app.api.api_router import api_router
from app.auth.google_oauth import build_token_provider
from app.core.db import engine, init_db
from app.core.tracing import setup_tracing
from app.inbox.reply_store import ReplyStore
from app.integrations.gmail_service import GmailClient
from app.sync.engine import SyncConfig, SyncEngine
from app.sync.notifications import PushChannel

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_tracing()
    init_db()

    app.state.reply_store = ReplyStore(engine, sent_retention=settings.SENT_MESSAGE_RETENTION)
    app.state.push_channel = PushChannel()
    app.state.gmail_client = None
    app.state.sync_engine = None

    token_provider = build_token_provider(settings)
    if token_provider is None:
        logger.warning("Gmail credentials not configured; reply sync disabled")
    else:
        app.state.gmail_client = GmailClient(token_provider)
        app.state.sync_engine = SyncEngine(
            app.state.gmail_client,
            app.state.reply_store,
            config=SyncConfig.from_settings(settings),
            push_channel=app.state.push_channel,
        )
        if settings.SYNC_ENABLED:
            await app.state.sync_engine.start()

    yield

    # Shutdown
    if app.state.sync_engine is not None:
        await app.state.sync_engine.stop()


app = FastAPI(
    title=settings.APP_NAME,
    lifespan=lifespan,
)

# Set all CORS enabled origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALL_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_PREFIX)


@app.get("/healthz")
async def health_check():
    """Health check endpoint reporting database connectivity and sync state."""
    health_status = {
        "status": "healthy",
        "services": {
            "database": "unknown",
            "sync": "not configured",
        }
    }

    # Check database
    try:
        with Session(engine) as session:
            session.exec(text("SELECT 1"))
            health_status["services"]["database"] = "healthy"
    except Exception as e:
        health_status["services"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    # Check sync engine
    sync_engine = getattr(app.state, "sync_engine", None)
    if sync_engine is not None:
        sync_status = sync_engine.status()
        health_status["services"]["sync"] = sync_status["mode"]
        if sync_status["last_error"]:
            health_status["services"]["sync"] = f"{sync_status['mode']}: {sync_status['last_error']}"
            health_status["status"] = "degraded"

    return health_status
