# Common utilities and shared modules
"""
Shared components used by the gateway and the sync core:
- Data models (Pydantic schemas)
- Error taxonomy
- Logging configuration
- Project configuration
"""

from .config import settings, Settings, PROJECT_ROOT, DATA_DIR
from .exceptions import (
    ConfigError,
    FetchError,
    FetchTimeout,
    InvalidTransition,
    PersistError,
    ServiceDeskError,
    UpdateError,
    UploadError,
    ValidationError,
)
from .logging import setup_logging

__all__ = [
    "settings",
    "Settings",
    "PROJECT_ROOT",
    "DATA_DIR",
    "ConfigError",
    "FetchError",
    "FetchTimeout",
    "InvalidTransition",
    "PersistError",
    "ServiceDeskError",
    "UpdateError",
    "UploadError",
    "ValidationError",
    "setup_logging",
]
