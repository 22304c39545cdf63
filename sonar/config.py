"""Configuration management and validation using Pydantic."""

import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    """Application configuration settings loaded from environment variables or .env files."""

    @staticmethod
    def get_env_file() -> str | None:
        """Determine which .env file to load based on environment variables.

        Returns:
            None if SKIP_ENV_FILE is set or the file does not exist (env vars only)
            .env.{APP_ENV} file path otherwise (defaults to .env.dev)
        """
        if os.getenv("SKIP_ENV_FILE"):
            return None
        env = os.getenv("APP_ENV", "dev")
        env_file = f".env.{env}"
        if not os.path.exists(env_file):
            return None
        return env_file

    model_config = SettingsConfigDict(
        env_file=get_env_file.__func__(),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # ==================== Application Settings ====================
    APP_NAME: str = "Sonar"
    APP_ENV: str = "dev"
    DB_URL: str  # Required, e.g. sqlite+aiosqlite:///./sonar.db

    # ==================== Database Connection Pooling ====================
    DB_POOL_SIZE: int = 20  # Persistent connections in pool (PostgreSQL only)
    DB_MAX_OVERFLOW: int = 10  # Additional connections beyond pool size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for available connection
    DB_POOL_RECYCLE: int = 3600  # Recycle connections after 1 hour
    DB_ECHO: bool = False

    # ==================== Database Resilience ====================
    DB_RETRY_MAX_ATTEMPTS: int = 3  # Max retry attempts for failed queries
    DB_RETRY_BASE_DELAY: float = 0.5  # Base delay for exponential backoff (seconds)
    DB_QUERY_TIMEOUT: int = 60  # Query execution timeout (seconds)
    DB_CONNECT_TIMEOUT: int = 10  # Connection establishment timeout (seconds)

    # ==================== Pagination ====================
    DEFAULT_PAGE: int = 1
    DEFAULT_LIMIT: int = 20
    MAX_LIMIT: int = 100

    # ==================== Batch Operations ====================
    MAX_BATCH_SIZE: int = 1000
    CHUNK_SIZE: int = 100

    # ==================== Field Validation ====================
    USERNAME_MAX_LENGTH: int = 64
    REAL_NAME_MAX_LENGTH: int = 128
    BLURB_MAX_LENGTH: int = 512
    PASSWORD_MIN_LENGTH: int = 16
    PASSWORD_MAX_LENGTH: int = 72  # In UTF-8 bytes; bcrypt rejects anything longer
    PING_MAX_LENGTH: int = 140

    # ==================== Auth Tokens ====================
    TOKEN_KEY_BYTES: int = 32
    TOKEN_MAX_AGE_MINUTES: int | None = None  # None = tokens never expire
    BCRYPT_ROUNDS: int = 12

    # ==================== Logging ====================
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_FILE: str | None = "sonar.log"  # None or empty to disable file logging
    LOG_FORMAT: str = "console"  # "console" for dev, "json" for production

    # ==================== Redis Caching ====================
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_TTL: int = 300  # Default TTL in seconds (5 minutes)
    CACHE_ENABLED: bool = True  # Global cache toggle

    @field_validator('DB_URL')
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        """Validate that DB_URL is provided and uses a supported async driver."""
        if not v:
            raise ValueError("DB_URL is required but not provided in environment variables")
        if not v.startswith(("sqlite+aiosqlite://", "postgresql+asyncpg://")):
            raise ValueError(
                "DB_URL must be an async connection string "
                "(sqlite+aiosqlite:// or postgresql+asyncpg://)"
            )
        return v

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that LOG_LEVEL names a standard logging level."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"LOG_LEVEL must be a standard logging level, got '{v}'")
        return level

    @field_validator('BCRYPT_ROUNDS')
    @classmethod
    def validate_bcrypt_rounds(cls, v: int) -> int:
        """bcrypt accepts cost factors between 4 and 31."""
        if not 4 <= v <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31")
        return v

    def is_sqlite(self) -> bool:
        """Whether the configured database is SQLite."""
        return self.DB_URL.startswith("sqlite")

settings = Settings()
