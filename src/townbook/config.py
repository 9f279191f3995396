import os
from dotenv import load_dotenv

load_dotenv()

def _as_bool(v: str | None, default: bool = False) -> bool:
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}

class Settings:
    # App
    APP_NAME: str = os.getenv("APP_NAME", "townbook")
    ENV: str = os.getenv("ENV", "dev")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    PORT: int = int(os.getenv("PORT", "8000"))

    # DB
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./townbook.db")

    # Room overlap test: "strict" or "conservative"
    ROOM_OVERLAP_POLICY: str = os.getenv("ROOM_OVERLAP_POLICY", "strict")

    # Microsoft Graph (e-mail notices)
    NOTIFY_BY_EMAIL: bool = _as_bool(os.getenv("NOTIFY_BY_EMAIL"), False)
    GRAPH_TENANT_ID: str | None = os.getenv("GRAPH_TENANT_ID")
    GRAPH_CLIENT_ID: str | None = os.getenv("GRAPH_CLIENT_ID")
    GRAPH_CLIENT_SECRET: str | None = os.getenv("GRAPH_CLIENT_SECRET")
    GRAPH_USER_UPN: str | None = os.getenv("GRAPH_USER_UPN")

    @property
    def is_dev(self) -> bool:
        return self.ENV.strip().lower() in {"dev", "development", "local"}

settings = Settings()
