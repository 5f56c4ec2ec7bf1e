# file: config.py

import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./notifications.db"

    # Web Push (VAPID)
    vapid_public_key: Optional[str] = None
    vapid_private_key: Optional[str] = None
    vapid_email: str = "admin@example.com"

    # Firebase Admin service account, used for FCM and ID token checks
    firebase_credentials: Optional[str] = None

    batch_size: int = Field(50, ge=1)
    max_concurrent_batches: int = Field(10, ge=1)
    retry_attempts: int = Field(0, ge=0)
    retry_backoff_seconds: float = Field(0.5, ge=0)
    push_ttl_seconds: int = Field(24 * 60 * 60, ge=0)

    @property
    def vapid_claims(self) -> dict:
        return {"sub": f"mailto:{self.vapid_email}"}

    @property
    def web_push_enabled(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key)


@lru_cache
def get_settings() -> Settings:
    """
    Reads the environment once at process start. Everything downstream
    receives this object instead of calling os.getenv itself.
    """
    defaults = Settings()
    return Settings(
        database_url=os.getenv("DATABASE_URL", defaults.database_url),
        vapid_public_key=os.getenv("VAPID_PUBLIC_KEY"),
        vapid_private_key=os.getenv("VAPID_PRIVATE_KEY"),
        vapid_email=os.getenv("VAPID_EMAIL", defaults.vapid_email),
        firebase_credentials=os.getenv("FIREBASE_CREDENTIALS"),
        batch_size=int(os.getenv("NOTIFY_BATCH_SIZE", defaults.batch_size)),
        max_concurrent_batches=int(os.getenv("NOTIFY_MAX_CONCURRENT_BATCHES", defaults.max_concurrent_batches)),
        retry_attempts=int(os.getenv("NOTIFY_RETRY_ATTEMPTS", defaults.retry_attempts)),
        retry_backoff_seconds=float(os.getenv("NOTIFY_RETRY_BACKOFF_SECONDS", defaults.retry_backoff_seconds)),
        push_ttl_seconds=int(os.getenv("PUSH_TTL_SECONDS", defaults.push_ttl_seconds)),
    )
