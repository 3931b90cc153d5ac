"""
Application Configuration
"""
import base64
import binascii
import json
from typing import Any

from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator

AES_KEY_BYTES = 32
ADMIN_API_KEY_HEADER = "X-Admin-API-Key"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    APP_NAME: str = "Partner Sync"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/partner_sync.db"

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgres:// or postgresql:// to postgresql+asyncpg:// for async support"""
        if v:
            if v.startswith("postgres://"):
                return v.replace("postgres://", "postgresql+asyncpg://", 1)
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # Inbound webhook
    WEBHOOK_SIGNATURE_HEADER: str = "X-OLMED-ERP-API-SIGNATURE"
    WEBHOOK_ENCRYPTION_KEY: str = ""  # Base64 of 32 bytes, may be stored encrypted
    WEBHOOK_HMAC_KEY: str = ""  # shared HMAC secret, may be stored encrypted

    # Master key for secrets stored encrypted in the environment (Base64, 32 bytes)
    CONFIG_MASTER_KEY: str = ""

    # Rate limiting - webhooks
    WEBHOOK_RATE_LIMIT_MAX_REQUESTS: int = 100
    WEBHOOK_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Work queue routing
    QUEUE_DEFAULT_OWNER_ID: int = 1
    QUEUE_SECOND_OWNER_ID: int = 2
    QUEUE_PRODUCT_CATEGORY: int = 16
    QUEUE_ORDER_CATEGORY: int = 17
    QUEUE_DIAGNOSTIC_CATEGORY: int = -1
    # Orders whose marketplace contains this text (case-insensitive) go to the second owner
    ORDER_SECOND_OWNER_PATTERN: str = "zawisza"

    # Work queue retry/backoff
    # backoff(n) = min(2 ** (n - 1), QUEUE_MAX_BACKOFF_MINUTES) minutes
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_MAX_BACKOFF_MINUTES: int = 64
    QUEUE_BATCH_SIZE: int = 50
    QUEUE_MAX_PROCESSING_SECONDS: int = 900  # watchdog for items stuck in Processing
    QUEUE_RETENTION_DAYS: int = 30
    # JSON object: {"16": "https://erp.local/products", "17": "https://erp.local/orders"}
    QUEUE_FORWARD_URLS: dict[int, str] = {}

    @field_validator("QUEUE_FORWARD_URLS", mode="before")
    @classmethod
    def parse_forward_urls(cls, v: Any) -> Any:
        """Accept a JSON string from the environment as well as a mapping"""
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return {}
            return json.loads(v)
        return v

    @field_validator("QUEUE_MAX_ATTEMPTS", "QUEUE_BATCH_SIZE", mode="after")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    # Partner API
    PARTNER_API_BASE_URL: str = "https://draft-csm-connector.grupaolmed.pl"
    PARTNER_API_USERNAME: str = ""
    PARTNER_API_PASSWORD: str = ""
    PARTNER_API_TIMEOUT_SECONDS: float = 30.0

    @field_validator("PARTNER_API_BASE_URL", mode="before")
    @classmethod
    def normalize_partner_url(cls, v: str) -> str:
        if v and not v.startswith("http"):
            v = f"https://{v}"
        return v.rstrip("/") if v else v

    # Token cache
    TOKEN_SAFETY_MARGIN_SECONDS: int = 600  # tokens count as expired 10 minutes early
    TOKEN_REFRESH_THRESHOLD_SECONDS: int = 300

    # Job scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TICK_SECONDS: float = 10.0
    SCHEDULER_JOB_TIMEOUT_SECONDS: float = 60.0
    SCHEDULER_SHUTDOWN_GRACE_SECONDS: float = 10.0
    SCHEDULER_RESPONSE_PREVIEW_CHARS: int = 1000
    SCHEDULER_SELF_BASE_URL: str = "http://localhost:8000"
    SCHEDULER_LOAD_DEFAULT_JOBS: bool = True
    SYNC_JOBS_FILE: str = "config/sync-jobs.json"

    @field_validator("SCHEDULER_TICK_SECONDS", mode="after")
    @classmethod
    def validate_tick(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("SCHEDULER_TICK_SECONDS must be positive")
        return v

    # Operator endpoints
    ADMIN_API_KEY: str = ""  # openssl rand -hex 32

    @model_validator(mode="after")
    def validate_keys(self) -> "Settings":
        """Cross-field checks run once at startup.

        Plain (not encrypted) webhook encryption keys must decode to 32 bytes.
        Missing keys only warn, so local development can start without them.
        """
        import warnings

        if self.CONFIG_MASTER_KEY and _decoded_length(self.CONFIG_MASTER_KEY) != AES_KEY_BYTES:
            raise ValueError("CONFIG_MASTER_KEY must be Base64 of a 32-byte key")

        if self.WEBHOOK_ENCRYPTION_KEY and not self.CONFIG_MASTER_KEY:
            if _decoded_length(self.WEBHOOK_ENCRYPTION_KEY) != AES_KEY_BYTES:
                raise ValueError("WEBHOOK_ENCRYPTION_KEY must be Base64 of a 32-byte key")

        if not self.WEBHOOK_ENCRYPTION_KEY or not self.WEBHOOK_HMAC_KEY:
            warnings.warn(
                "WEBHOOK_ENCRYPTION_KEY or WEBHOOK_HMAC_KEY is empty - "
                "every inbound webhook will be rejected",
                stacklevel=2,
            )

        if not self.ADMIN_API_KEY and not self.DEBUG:
            warnings.warn(
                "ADMIN_API_KEY is empty - operator endpoints are locked",
                stacklevel=2,
            )

        return self

    class Config:
        env_file = ".env"
        case_sensitive = True


def _decoded_length(value: str) -> int:
    try:
        return len(base64.b64decode(value, validate=True))
    except (binascii.Error, ValueError):
        return -1


settings = Settings()
