"""Core module initialization."""

from careflow.core.config import Settings, get_settings
from careflow.core.auth import get_current_user

__all__ = [
    "Settings",
    "get_settings",
    "get_current_user"
]
