from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine, SQLModel

from app.models import inbox  # noqa: F401  (registers tables on SQLModel.metadata)
from app.core.config import settings


def build_engine(database_url: str):
    """Create an engine; in-memory SQLite gets a single shared connection."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


engine = build_engine(settings.DATABASE_URL)


def init_db(db_engine=None):
    SQLModel.metadata.create_all(db_engine or engine)
