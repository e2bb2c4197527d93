from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from the environment (or a local .env file).
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: Literal["development", "testing", "production"] = "development"
    API_PREFIX: str = "/api"

    # MongoDB
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DB: str = "pairchat"

    # Auth
    JWT_SECRET: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_DAYS: int = 7
    BCRYPT_ROUNDS: int = 12

    # CORS
    CLIENT_URL: str = "http://localhost:5173"

    # Image uploads (Cloudinary)
    CLOUDINARY_URL: Optional[str] = None
    UPLOAD_TIMEOUT_SECONDS: float = 30.0
    MAX_IMAGE_BYTES: int = 5 * 1024 * 1024

    # Realtime
    WS_AUTH_TIMEOUT_SECONDS: float = 10.0

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @property
    def is_development(self) -> bool:
        return self.ENV == "development"

    @property
    def is_production(self) -> bool:
        return self.ENV == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
