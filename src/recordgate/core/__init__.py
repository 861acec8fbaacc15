"""RecordGate core module.

Shared components used across all services:
- Configuration management
- Cached settings accessor
"""

from recordgate.core.config import (
    CipherSettings,
    CipherWriteFormat,
    ConfigValidationError,
    DatabaseSettings,
    DisclosureSettings,
    Environment,
    Settings,
)
from recordgate.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "CipherSettings",
    "CipherWriteFormat",
    "ConfigValidationError",
    "DatabaseSettings",
    "DisclosureSettings",
    "Environment",
    "Settings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
