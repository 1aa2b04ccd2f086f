"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import Dict, List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Booking Attribution Engine"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_ATTRIBUTION_LOCK_TTL: int = 60        # seconds
    REDIS_ATTRIBUTION_LOCK_WAIT: float = 5.0    # seconds to wait before proceeding unlocked

    # ── JWT (signed response links) ──────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    RESPONSE_LINK_EXPIRE_HOURS: int = 48

    # ── Twilio ───────────────────────────────────────────────
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""
    TWILIO_WHATSAPP_FROM: str = ""

    # ── Email ────────────────────────────────────────────────
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@example.com"
    EMAIL_FROM_NAME: str = "Bookings"

    # ── Document Service ─────────────────────────────────────
    DOCUMENTS_SERVICE_URL: str = "http://localhost:8100"
    DOCUMENTS_SERVICE_TIMEOUT: float = 20.0

    # ── Frontend ─────────────────────────────────────────────
    FRONTEND_URL: str = "http://localhost:3000"
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Channel Delivery ─────────────────────────────────────
    CHANNEL_SEND_TIMEOUT_SECONDS: float = 5.0
    CHANNEL_SEND_MAX_ATTEMPTS: int = 3
    PENDING_NOTIFICATION_TIMEOUT_MINUTES: int = 30
    FANOUT_CONCURRENCY: int = 10

    # ── Business Config ──────────────────────────────────────
    DEFAULT_MAX_DISTANCE_KM: float = 150.0
    BROADCAST_WINDOW_HOURS: int = 24
    PROFESSIONAL_ESTIMATE_RATIO: float = 0.85
    PROFESSIONAL_ATTACHMENT_MAX_COUNT: int = 2
    PROFESSIONAL_ATTACHMENT_MAX_BYTES: int = 5 * 1024 * 1024
    REMINDER_OFFSETS_HOURS: Dict[str, int] = {"7D": 168, "24H": 24, "1H": 1}
    BLACKLIST_REFUSAL_THRESHOLD: int = 2
    BLACKLIST_DURATION_HOURS: int = 72

    @field_validator("PROFESSIONAL_ESTIMATE_RATIO")
    @classmethod
    def ratio_in_range(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("PROFESSIONAL_ESTIMATE_RATIO must be in (0, 1]")
        return v

    @field_validator("REMINDER_OFFSETS_HOURS")
    @classmethod
    def offsets_positive(cls, v: Dict[str, int]) -> Dict[str, int]:
        if any(hours <= 0 for hours in v.values()):
            raise ValueError("Reminder offsets must be positive hour counts")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance; call this everywhere."""
    return Settings()


settings = get_settings()
