"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Nothing is strictly required; every setting has a usable default.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LRS_URL": "Learning Record Store URL",
        "LRS_AUTH": "Learning Record Store authentication",
        "APP_BASE_URL": "Home page used for xAPI actor accounts",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    url_vars = {"LRS_URL", "APP_BASE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    # Fail fast on malformed tuning values instead of at the first update.
    stats_max_attempts()
    stats_retry_delay()

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def get_env_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    """Get integer value from environment variable."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError as exc:
        raise EnvironmentError(f"{name} must be an integer, got {value!r}") from exc
    if minimum is not None and parsed < minimum:
        raise EnvironmentError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed

def get_env_float(name: str, default: float, *, minimum: Optional[float] = None) -> float:
    """Get float value from environment variable."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value.strip())
    except ValueError as exc:
        raise EnvironmentError(f"{name} must be a number, got {value!r}") from exc
    if minimum is not None and parsed < minimum:
        raise EnvironmentError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed

def stats_max_attempts() -> int:
    """Transaction attempts allowed per stats update."""
    return get_env_int("STATS_MAX_ATTEMPTS", 5, minimum=1)

def stats_retry_delay() -> float:
    """Initial backoff in seconds between conflicting stats transactions."""
    return get_env_float("STATS_RETRY_DELAY", 0.01, minimum=0.0)

def xapi_enabled() -> bool:
    return get_env_bool("XAPI_ENABLED", True)
