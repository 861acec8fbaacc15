"""Cached settings accessor for RecordGate configuration.

Usage:
    from recordgate.core.settings import get_settings

    settings = get_settings()
    database = Database(settings.database)

The settings are loaded once and cached. To reload settings (e.g., in tests),
use clear_settings_cache(). Components never read settings themselves; the
process entry point passes the relevant section into each constructor.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from recordgate.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached application settings.

    Returns:
        Validated Settings instance.

    Raises:
        SystemExit: If settings cannot be loaded (fail-fast behavior).
    """
    try:
        logger.info("Loading application settings from environment")
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)

        logger.info(
            "Configuration loaded: environment=%s, cipher_write_format=%s, policy_hash=%s",
            settings.environment.value,
            settings.cipher.write_format.value,
            settings.get_policy_hash()[:16] + "...",
        )

        return settings

    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        logger.critical(
            "Configuration validation failed:\n%s",
            "\n".join(error_messages),
        )
        raise SystemExit(1) from e

    except ConfigValidationError as e:
        logger.critical(
            "Configuration validation failed: %s (field: %s)",
            e.message,
            e.field or "unknown",
        )
        raise SystemExit(1) from e


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Example:
        def test_something(monkeypatch):
            clear_settings_cache()
            monkeypatch.setenv("RECORDGATE_ENVIRONMENT", "staging")
            settings = get_settings()
    """
    get_settings.cache_clear()
    logger.debug("Settings cache cleared")


def get_settings_safe() -> Settings | None:
    """Get settings without raising exceptions.

    Returns:
        Settings instance if available, None otherwise.
    """
    try:
        return get_settings()
    except SystemExit:
        return None
