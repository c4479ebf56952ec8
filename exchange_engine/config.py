from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # JWT Settings
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # App Settings
    APP_NAME: str = "Retail Exchange Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    AUTO_CREATE_TABLES: bool = False  # create_all on startup (dev only)

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Tax
    DEFAULT_TAX_JURISDICTION: str = "ON"  # Used when an order has no/unknown jurisdiction

    # Exchange Settings
    EXCHANGE_ELIGIBLE_STATUSES: list[str] = ["completed", "paid", "fulfilled", "delivered"]
    ALLOW_NEGATIVE_STOCK: bool = False  # If True, exchange sales may drive on-hand below zero

    # Store Credit Settings
    STORE_CREDIT_CODE_PREFIX: str = "SC-"
    STORE_CREDIT_CODE_LENGTH: int = 5
    STORE_CREDIT_CODE_MAX_ATTEMPTS: int = 10

    @field_validator('CORS_ORIGINS', 'EXCHANGE_ELIGIBLE_STATUSES', mode='before')
    @classmethod
    def parse_list(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [item.strip() for item in v.split(',') if item.strip()]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return self.CORS_ORIGINS

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
