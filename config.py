from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    APP_NAME: str = "Campus Bus API"
    ENVIRONMENT: str = "development"
    PORT: int = 8000

    # MongoDB
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: str = "campus_bus"

    # Auth
    SECRET_KEY: str = "supersecret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    ADMIN_EMAIL: str = "admin@campus.edu"
    ADMIN_PASSWORD: str = "admin123"

    CORS_ORIGINS: List[str] = ["*"]

    LOG_LEVEL: str = "INFO"

    # Bus.recentActivity is kept newest first and capped at this many entries
    RECENT_ACTIVITY_LIMIT: int = 5

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()
