"""
Application Configuration
=========================
Central configuration using pydantic-settings.
Reads from .env file automatically. All defaults are local-dev friendly.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings. Override via environment variables or .env file.

    For local development, no .env file is needed; all defaults work.
    To push committed composites to S3, set STORAGE_PROVIDER=s3 and provide AWS_* variables.
    """

    # --- General ---
    FRONTEND_URL: str = "http://localhost:3000"

    # --- Host document storage ---
    STORAGE_PROVIDER: str = "local"  # "local" or "s3"

    # --- AWS S3 (only needed when STORAGE_PROVIDER=s3) ---
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_S3_BUCKET_NAME: Optional[str] = None
    AWS_REGION: str = "ap-south-1"

    # --- Paths ---
    OUTPUTS_DIR: str = "outputs"

    # --- Background removal ---
    REMBG_MODEL: str = "u2net"
    ALPHA_MATTING: bool = False
    REMOVAL_TIMEOUT_SECONDS: Optional[float] = None  # None = wait until cancelled
    PROPAGATE_CANCELLATION: bool = True

    # --- Compositing ---
    FONT_PATH: Optional[str] = None  # Bold TTF; falls back to system fonts
    TEXT_SCALE: float = 2.0

    # --- Editor sessions ---
    SESSION_IDLE_TTL_SECONDS: Optional[float] = 1800  # None = never expire
    MAX_SESSIONS: int = 100

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
