"""Project configuration and paths.

Loads settings from config/settings.yaml and environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .exceptions import ConfigError

# === Paths ===
PROJECT_ROOT = Path(__file__).parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"
DATA_DIR = PROJECT_ROOT / "data"

# Load .env from project root
load_dotenv(PROJECT_ROOT / ".env")


class SyncSettings(BaseModel):
    """Fetch timeout and retry policy for data loads."""
    fetch_timeout_seconds: float = 7.0
    # Delay before each attempt; the first attempt is immediate.
    retry_delays_seconds: list[float] = Field(default_factory=lambda: [0.0, 1.5, 2.0])
    notification_feed_limit: int = 20


class MediaSettings(BaseModel):
    """Object storage and request-form settings."""
    bucket: str = "service-media"
    note_folder: str = "notes"
    min_description_length: int = 20
    max_video_bytes: int = 100 * 1024 * 1024


class NotificationSettings(BaseModel):
    """Sound feedback settings."""
    default_volume: float = Field(default=0.4, ge=0.0, le=1.0)
    prefs_path: str = str(DATA_DIR / "notification_prefs.json")


class EmailSettings(BaseModel):
    """EmailJS template settings for outbound mail."""
    endpoint: str = "https://api.emailjs.com/api/v1.0/email/send"
    service_id: str = "service_gwhzwdo"
    created_template_id: str = "template_tu5rxco"
    update_template_id: str = "template_5ja5csa"
    timeout_seconds: float = 10.0


class Settings(BaseModel):
    """Top-level application settings."""
    sync: SyncSettings = Field(default_factory=SyncSettings)
    media: MediaSettings = Field(default_factory=MediaSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)

    @classmethod
    def load(cls, path: Path | None = None) -> Settings:
        """Load settings from config/settings.yaml, falling back to defaults."""
        settings_path = path or CONFIG_DIR / "settings.yaml"
        if settings_path.exists():
            with open(settings_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            return cls(**data)
        return cls()


def get_supabase_credentials() -> tuple[str, str]:
    """Get Supabase URL and key from environment."""
    url = os.getenv("SUPABASE_URL", "")
    key = os.getenv("SUPABASE_ANON_KEY", "") or os.getenv("SUPABASE_SERVICE_KEY", "")
    if not url or not key:
        raise ConfigError(
            "SUPABASE_URL / SUPABASE_ANON_KEY must be set in .env. "
            "See config/.env.example."
        )
    return url, key


def get_emailjs_public_key() -> str:
    """Get EmailJS public key from environment (empty disables email)."""
    return os.getenv("EMAILJS_PUBLIC_KEY", "")


# Singleton settings instance
settings = Settings.load()
