"""
Application settings using pydantic-settings.

Centralizes configuration for local/dev and production deployment: record
store connection, session-token signing, password hashing cost and the
realtime room sweeper.
"""

from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, computed_field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App Configuration
    ENVIRONMENT: str = Field(default="development", description="Environment: development, staging, production")
    DEBUG: bool = Field(default=True, description="Enable debug mode")
    LOG_LEVEL: str = Field(default="info", description="Logging level")

    # Database Configuration
    DATABASE_URL: str = Field(default="sqlite:///./nutrivision.db", description="Database connection URL")
    DB_ECHO: bool = Field(default=False, description="Enable SQLAlchemy query logging")
    SEED_DEMO_DATA: bool = Field(default=False, description="Seed demo accounts on startup")

    # Server Configuration
    HOST: str = Field(default="0.0.0.0", description="Server host")
    PORT: int = Field(default=5000, description="Server port")
    FRONTEND_URL: str = Field(default="http://localhost:3000", description="Frontend base URL for meeting links")

    # CORS Configuration
    CORS_ORIGINS_STR: str = Field(default="*", description="Comma-separated CORS origins")

    @computed_field
    @property
    def CORS_ORIGINS(self) -> List[str]:
        """Parse CORS origins from string to list."""
        if self.CORS_ORIGINS_STR == "*":
            return ["*"]
        return [origin.strip() for origin in self.CORS_ORIGINS_STR.split(",") if origin.strip()]

    # Session Tokens
    JWT_SECRET: str = Field(default="change-me-in-production", description="Session token signing secret")
    JWT_ALGORITHM: str = Field(default="HS256", description="Session token signing algorithm")
    JWT_EXPIRE_MINUTES: int = Field(default=60 * 24 * 7, description="Token lifetime for patients and operators")
    PROFESSIONAL_JWT_EXPIRE_MINUTES: int = Field(default=60 * 24 * 30, description="Token lifetime for professionals")

    # Credentials
    BCRYPT_ROUNDS: int = Field(default=12, description="bcrypt cost factor")

    # Booking
    DEFAULT_CONSULTATION_RATE: float = Field(default=50.0, description="Fee used when a professional has no rate")

    # Rate Limiting
    RATE_LIMIT_PER_WINDOW: int = Field(default=100, description="Requests allowed per client per window")
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=900, description="Rate limit window size")

    # Realtime Signaling
    ROOM_MAX_EMPTY_AGE_HOURS: float = Field(default=24, description="Empty signaling rooms older than this are purged")
    ROOM_SWEEP_INTERVAL_SECONDS: int = Field(default=3600, description="Interval of the empty-room sweep")

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
