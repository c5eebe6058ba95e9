"""Core modules for the compliance alerting service."""
from .config import Settings, settings

__all__ = [
    "Settings",
    "settings",
]
