"""
Configuration settings for MedChat backend.
Uses pydantic-settings for environment variable support.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional
import secrets
import os


# backend/medchat/config.py -> backend/
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
SECRET_KEY_FILE = os.path.join(BASE_DIR, ".secret_key")


def get_or_create_secret_key():
    """Get secret key from file or generate a new one."""
    secret_file = SECRET_KEY_FILE
    if os.path.exists(secret_file):
        try:
            with open(secret_file, "r") as f:
                return f.read().strip()
        except OSError:
            pass

    # Generate new key
    key = secrets.token_urlsafe(32)
    try:
        with open(secret_file, "w") as f:
            f.write(key)
    except OSError:
        pass  # If we can't write (e.g. read-only fs), just return the key

    return key


class Settings(BaseSettings):
    """Application configuration settings."""

    # Application
    APP_NAME: str = "MedChat"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Database
    # resolved relative to the backend directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{os.path.join(BASE_DIR, 'medchat.db')}"

    # JWT verification (tokens are issued by the identity service)
    SECRET_KEY: str = Field(default_factory=get_or_create_secret_key)
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24  # 24 hours

    # Profile provider; empty means the in-memory directory is used
    PROFILE_SERVICE_URL: Optional[str] = None
    PROFILE_SERVICE_TIMEOUT: float = 10.0

    # Object storage
    UPLOAD_DIR: str = os.path.join(BASE_DIR, "uploads")
    PUBLIC_BASE_URL: str = "http://localhost:6666"
    UPLOAD_CHUNK_SIZE: int = 256 * 1024
    OBJECT_QUOTA_BYTES: int = 50 * 1024 * 1024  # hard per-object limit of the store

    # Attachments
    MAX_ATTACHMENT_SIZE: int = 10 * 1024 * 1024  # 10MB
    ALLOWED_ATTACHMENT_TYPES: list = ["application/pdf", "image/*"]
    DEFAULT_FILE_CAPTION: str = "Medical report"

    # Live feeds
    MESSAGE_WINDOW_SIZE: int = 200
    CONVERSATION_LIST_LIMIT: int = 100
    RECONNECT_DELAY_SECONDS: float = 2.0
    SSE_HEARTBEAT_SECONDS: int = 30

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 6666

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
