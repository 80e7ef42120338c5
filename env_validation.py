"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


_DEFAULTS: Dict[str, str] = {
    "DB_PATH": "data.db",
    "DB_MAX_CONNECTIONS": "10",
    "STORAGE_TIMEOUT_SECONDS": "5",
}

_OPTIONAL_VARS = {
    "LRS_URL": "Learning Record Store URL for forwarding activity events",
    "LRS_AUTH": "Learning Record Store authentication",
    "FREE_LEVELS": "Highest level playable without a subscription",
}


def validate_environment() -> None:
    """Apply defaults and validate the activity service environment.

    Raises EnvironmentError if validation fails.
    """
    for var, value in _DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    for var in ("DB_MAX_CONNECTIONS", "FREE_LEVELS"):
        value = os.getenv(var)
        if value is None or value == "":
            continue
        try:
            parsed = int(value)
        except ValueError:
            raise EnvironmentError(f"{var} must be an integer, got {value!r}")
        if parsed < 0 or (var == "DB_MAX_CONNECTIONS" and parsed == 0):
            raise EnvironmentError(f"{var} must be positive, got {parsed}")

    timeout = os.getenv("STORAGE_TIMEOUT_SECONDS")
    try:
        if timeout is not None and float(timeout) <= 0:
            raise EnvironmentError("STORAGE_TIMEOUT_SECONDS must be greater than zero")
    except ValueError:
        raise EnvironmentError(f"STORAGE_TIMEOUT_SECONDS must be numeric, got {timeout!r}")

    url_vars = {"LRS_URL", "APP_BASE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var, description in _OPTIONAL_VARS.items():
        if not os.getenv(var):
            logger.debug("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Get integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return default


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric value for %s: %r", name, value)
        return default
