# backend/armogrid/core/config.py

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]  # backend/
ENV_PATH = BASE_DIR / ".env"


class Settings(BaseSettings):
    """
    Pydantic Settings v2

    Loads env vars from the OS first, then a local .env file for development.
    Secrets (IoT admin password, Paystack key, UltraMsg token, SMTP password)
    belong in the deployment environment, never in this file.
    """

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # -------------------------
    # General
    # -------------------------
    DEBUG: bool = Field(default=False)
    ENVIRONMENT: str = Field(default="production")
    TIMEZONE: str = Field(default="Africa/Lagos")

    # -------------------------
    # CORS
    # -------------------------
    CORS_ORIGINS: Optional[str] = Field(
        default="http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"
    )

    # -------------------------
    # Mongo (support historic names)
    # -------------------------
    MONGODB_URL: Optional[str] = Field(default=None)
    MONGODB_URI: Optional[str] = Field(default=None)
    MONGO_URI: Optional[str] = Field(default=None)
    MONGODB_DB: Optional[str] = Field(default=None)

    # -------------------------
    # IoT meter platform
    # -------------------------
    IOT_BASE_URL: str = Field(default="https://iot.solarshare.africa")
    IOT_REQUEST_TIMEOUT_SECONDS: float = Field(default=30)
    IOT_VERIFY_SSL: bool = Field(default=False)
    IOT_ADMIN_TOKEN: Optional[str] = Field(default=None)
    IOT_ADMIN_USERNAME: Optional[str] = Field(default=None)
    IOT_ADMIN_PASSWORD: Optional[str] = Field(default=None)
    IOT_TOKEN_TTL_HOURS: int = Field(default=24)

    # -------------------------
    # Analytics
    # -------------------------
    ANALYTICS_BATCH_SIZE: int = Field(default=10)
    DEFAULT_ALARM_THRESHOLD: float = Field(default=100)
    POWER_HISTORY_LIMIT: int = Field(default=500)
    POWER_READING_RETENTION_DAYS: Optional[int] = Field(default=None)

    # -------------------------
    # Scheduled jobs
    # -------------------------
    METER_SYNC_INTERVAL_MINUTES: int = Field(default=0)
    OFFLINE_ALERTS_ENABLED: bool = Field(default=False)
    OFFLINE_BULK_ALERT_THRESHOLD: int = Field(default=5)

    # -------------------------
    # Paystack
    # -------------------------
    PAYSTACK_SECRET_KEY: Optional[str] = Field(default=None)
    PAYSTACK_BUY_TYPE: int = Field(default=3)

    # -------------------------
    # JWT Authentication
    # -------------------------
    SECRET_KEY: str = Field(default="change-me")
    ALGORITHM: str = Field(default="HS256")
    ACCESS_TOKEN_EXPIRE_HOURS: int = Field(default=24)

    # -------------------------
    # Notifications
    # -------------------------
    ADMIN_EMAIL: Optional[str] = Field(default=None)
    ADMIN_WHATSAPP: Optional[str] = Field(default=None)
    ULTRAMSG_BASE_URL: str = Field(default="https://api.ultramsg.com")
    ULTRAMSG_INSTANCE_ID: Optional[str] = Field(default=None)
    ULTRAMSG_TOKEN: Optional[str] = Field(default=None)
    DEFAULT_COUNTRY_CODE: str = Field(default="+234")

    SMTP_HOST: Optional[str] = Field(default=None)
    SMTP_PORT: int = Field(default=587)
    SMTP_USER: Optional[str] = Field(default=None)
    SMTP_PASS: Optional[str] = Field(default=None)
    SMTP_SSL: Optional[bool] = Field(default=None)
    SMTP_TIMEOUT: float = Field(default=20)
    FROM_EMAIL: Optional[str] = Field(default=None)
    FROM_NAME: str = Field(default="ArmogridSolar")

    # -------------------------
    # Helpers
    # -------------------------
    def get_cors_origins(self) -> List[str]:
        raw = (self.CORS_ORIGINS or "").strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                items = json.loads(raw)
                return [str(x).strip().rstrip("/") for x in items if str(x).strip()]
            except Exception:
                return []
        return [x.strip().rstrip("/") for x in raw.split(",") if x.strip()]

    def get_mongo_uri(self) -> str:
        return (
            self.MONGODB_URL
            or self.MONGODB_URI
            or self.MONGO_URI
            or "mongodb://localhost:27017"
        )

    def get_mongo_db(self) -> str:
        return self.MONGODB_DB or "armogrid"

    @property
    def smtp_configured(self) -> bool:
        return all([self.SMTP_HOST, self.SMTP_USER, self.SMTP_PASS, self.FROM_EMAIL])

    @property
    def ultramsg_configured(self) -> bool:
        return bool(self.ULTRAMSG_INSTANCE_ID and self.ULTRAMSG_TOKEN)


settings = Settings()
