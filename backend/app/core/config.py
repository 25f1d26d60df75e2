from typing import Annotated, Any
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field, AnyUrl, BeforeValidator


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",")]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    APP_NAME: str = "Leadflow"
    API_PREFIX: str = "/api"

    # Database
    DATABASE_URL: str

    # Gmail credentials (refresh-token grant, or a static token for local runs)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GMAIL_REFRESH_TOKEN: str = ""
    GMAIL_ACCESS_TOKEN: str = ""
    GMAIL_ADDRESS: str = ""

    # Gmail push notifications (Cloud Pub/Sub)
    GMAIL_PUBSUB_TOPIC: str = ""
    PUBSUB_VERIFICATION_TOKEN: str = ""

    # Reply sync
    SYNC_ENABLED: bool = True
    SYNC_CANDIDATE_QUERY: str = "in:inbox -from:me is:unread newer_than:30d"
    SYNC_PAGE_SIZE: int = 50
    SYNC_MAX_PAGES: int = 4
    SYNC_BATCH_SIZE: int = 10
    POLL_INITIAL_SECONDS: float = 15.0
    POLL_FLOOR_SECONDS: float = 10.0
    POLL_CEILING_SECONDS: float = 60.0
    POLL_GROWTH: float = 1.5
    POLL_ERROR_GROWTH: float = 2.0
    PUSH_BACKUP_INTERVAL_SECONDS: float = 300.0
    WATCH_RENEWAL_LEAD_HOURS: float = 24.0
    SENT_MESSAGE_RETENTION: int = 1000

    # OpenAI
    OPENAI_API_KEY: str
    OPENAI_MODEL: str = "gpt-4o"
    OPENAI_TIMEOUT_SECONDS: float = 30.0

    FRONTEND_HOST: str = "http://localhost:5173"
    BACKEND_CORS_ORIGINS: Annotated[list[AnyUrl] | str, BeforeValidator(parse_cors)] = [
        "http://localhost:8000"
    ]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ALL_CORS_ORIGINS(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS] + [
            self.FRONTEND_HOST
        ]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
