from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, Optional, Tuple
import os
from dotenv import load_dotenv

load_dotenv()


# Regional hosts for the accounting API and its OAuth server, keyed by the
# datacenter code chosen when the client app was registered.
DATACENTERS: Dict[str, Tuple[str, str]] = {
    "us": ("https://www.zohoapis.com", "https://accounts.zoho.com"),
    "eu": ("https://www.zohoapis.eu", "https://accounts.zoho.eu"),
    "in": ("https://www.zohoapis.in", "https://accounts.zoho.in"),
    "au": ("https://www.zohoapis.com.au", "https://accounts.zoho.com.au"),
    "jp": ("https://www.zohoapis.jp", "https://accounts.zoho.jp"),
    "cn": ("https://www.zohoapis.com.cn", "https://accounts.zoho.com.cn"),
}


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    # Dedicated key material for credential encryption. When unset the
    # application SECRET_KEY is used so existing installs keep decrypting.
    ENCRYPTION_KEY: Optional[str] = None
    DEBUG: bool = False

    # Local development falls back to a sqlite file; deployments inject a
    # Postgres URL.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./booksync.db")

    BOOKS_DATACENTER: str = "us"
    BOOKS_HTTP_TIMEOUT_SECONDS: float = 20.0
    BOOKS_HTTP_CONNECT_TIMEOUT_SECONDS: float = 5.0

    # Remote API allows 100 calls per minute per organization.
    BOOKS_RATE_LIMIT_PER_MINUTE: int = 100
    BOOKS_RATE_LIMIT_MAX_WAIT_SECONDS: float = 30.0
    BOOKS_MAX_RATE_LIMIT_RETRIES: int = 3
    BOOKS_RATE_LIMIT_BASE_DELAY_SECONDS: float = 2.0

    # Access tokens are treated as expired this many seconds early.
    TOKEN_EXPIRY_MARGIN_SECONDS: int = 300

    REMOTE_CACHE_TTL_SECONDS: int = 3600
    CONNECTION_HEALTH_TTL_SECONDS: int = 300

    RETRY_BATCH_LIMIT: int = 10
    RETRY_WORKER_INTERVAL_SECONDS: int = 300

    # Shared secret for worker -> web app calls (retry tick).
    INTERNAL_API_KEY: Optional[str] = None
    WEB_APP_URL: Optional[str] = None

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    model_config = SettingsConfigDict(env_file=None, env_file_encoding="utf-8", extra="ignore")

    @property
    def encryption_key(self) -> str:
        return self.ENCRYPTION_KEY or self.SECRET_KEY


def resolve_datacenter(code: Optional[str]) -> Tuple[str, str]:
    """Return ``(api_base_url, accounts_base_url)`` for a datacenter code."""
    key = (code or settings.BOOKS_DATACENTER or "us").strip().lower()
    if key not in DATACENTERS:
        raise ValueError(f"Unknown datacenter '{code}'. Expected one of: {', '.join(sorted(DATACENTERS))}")
    return DATACENTERS[key]


settings = Settings()
