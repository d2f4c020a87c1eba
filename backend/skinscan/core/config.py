"""
Application configuration loaded from environment variables.
Uses pydantic-settings for validation and type coercion.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────────────────
    APP_NAME: str = "SkinScan"
    APP_ENV: str = "development"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = True
    API_PREFIX: str = "/api"

    # ── Server ───────────────────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── Redis ────────────────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 5.0

    # ── CORS ─────────────────────────────────────────────────────────────
    CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    # ── AWS S3 (upload targets) ──────────────────────────────────────────
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "us-east-1"
    AWS_ENDPOINT_URL: str = ""          # blank = real AWS; set for MinIO/LocalStack
    S3_BUCKET_NAME: str = "skinscan-uploads"
    S3_UPLOAD_URL_TTL: int = 900        # 15 min, write-only PUT targets
    S3_PUBLIC_BASE_URL: str = ""        # blank = presigned GET URLs

    # ── Inference upstream ───────────────────────────────────────────────
    INFERENCE_URL: str = "https://detect.roboflow.com"
    INFERENCE_MODEL: str = "skin-analysis"
    INFERENCE_MODEL_VERSION: str = "1"
    INFERENCE_API_KEY: str = ""
    INFERENCE_TIMEOUT_SECONDS: float = 30.0
    INFERENCE_MAX_RETRIES: int = 2
    INFERENCE_CACHE_TTL: int = 300      # 5 min
    INFERENCE_BREAKER_ERROR_RATE: float = 0.5
    INFERENCE_BREAKER_MIN_CALLS: int = 3
    INFERENCE_BREAKER_WINDOW_SECONDS: float = 10.0
    INFERENCE_BREAKER_RESET_SECONDS: float = 30.0

    # ── Rate Limiting (per caller identity) ──────────────────────────────
    RATE_LIMIT_UPLOAD_PER_HOUR: int = 20
    RATE_LIMIT_INFER_PER_HOUR: int = 50

    # ── Shopify cart relay ───────────────────────────────────────────────
    SHOPIFY_WEBHOOK_SECRET: str = ""
    CART_RELAY_BACKEND: str = "memory"  # memory | redis
    CART_RELAY_TTL_SECONDS: float = 5.0
    CART_RELAY_POLL_SECONDS: float = 1.0
    CART_STATUS_TTL_SECONDS: int = 300

    # ── Celery ───────────────────────────────────────────────────────────
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    # ── Embedded client ──────────────────────────────────────────────────
    CLIENT_API_BASE_URL: str = "http://localhost:8000/api"
    CLIENT_MAX_ATTEMPTS: int = 3
    CLIENT_BASE_DELAY_MS: int = 1000
    CLIENT_TIMEOUT_SECONDS: float = 30.0
    CLIENT_IDENTITY_FILE: str = "~/.skinscan/identity"
    CLIENT_MAX_UPLOAD_MB: int = 5
    CLIENT_MAX_DIMENSION: int = 1024
    CLIENT_JPEG_QUALITY: float = 0.85
    CART_REQUEST_TIMEOUT_SECONDS: float = 5.0
    CART_INITIAL_STATE_DELAY_SECONDS: float = 1.0
    CART_ALLOWED_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    # ── Logging ──────────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"

    @field_validator("CORS_ORIGINS", "CART_ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_origin_list(cls, v):
        if isinstance(v, str):
            import json
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("CART_RELAY_BACKEND")
    @classmethod
    def check_relay_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {"memory", "redis"}:
            raise ValueError("CART_RELAY_BACKEND must be 'memory' or 'redis'")
        return v

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def client_max_upload_bytes(self) -> int:
        return self.CLIENT_MAX_UPLOAD_MB * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
