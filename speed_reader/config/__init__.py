from __future__ import annotations

from .readwise import DEFAULT_MAX_REQUESTS_PER_WINDOW, DEFAULT_PAGE_SIZE, ReadwiseSyncConfig
from .runtime import RuntimeConfig
from .settings import AppConfig, Settings, load_config

__all__ = [
    "DEFAULT_MAX_REQUESTS_PER_WINDOW",
    "DEFAULT_PAGE_SIZE",
    "AppConfig",
    "ReadwiseSyncConfig",
    "RuntimeConfig",
    "Settings",
    "load_config",
]
