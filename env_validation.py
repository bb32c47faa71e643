"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


# name -> (default, minimum)
INTEGER_SETTINGS: Dict[str, tuple] = {
    "SEEN_SET_CAPACITY": (100, 1),
    "SEEN_SET_MAX_KEYS": (10000, 1),
    "SEEN_SET_TTL_SECONDS": (3600, 1),
    "SIGNATURE_RETRY_LIMIT": (20, 1),
    "QUESTION_CACHE_TTL_SECONDS": (3600, 1),
    "QUESTION_CACHE_MAX_ENTRIES": (512, 1),
    "CACHE_SWEEP_INTERVAL_SECONDS": (3600, 1),
    "ASSESSMENT_QUESTION_COUNT": (24, 1),
    "MASTERY_BONUS_TOKENS": (50, 0),
}


def validate_environment() -> None:
    """Validate configuration environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    problems = []
    for var, (default, minimum) in INTEGER_SETTINGS.items():
        raw = os.getenv(var)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = int(raw)
        except ValueError:
            problems.append(f"{var} must be an integer (got {raw!r})")
            continue
        if value < minimum:
            problems.append(f"{var} must be >= {minimum} (got {value})")

    grade = os.getenv("DEFAULT_USER_GRADE")
    if grade and grade.strip().upper() not in {"K", "0", "1", "2", "3", "4", "5", "6"}:
        problems.append(f"DEFAULT_USER_GRADE must be K or 0-6 (got {grade!r})")

    if problems:
        raise EnvironmentError("Invalid configuration: " + "; ".join(problems))

    catalog_path = os.getenv("FACTS_CATALOG_PATH")
    if not catalog_path:
        logger.warning(
            "Optional environment variable not set: FACTS_CATALOG_PATH (pre-authored fact catalog); "
            "questions will be generated synthetically"
        )
    elif not os.path.exists(catalog_path):
        raise EnvironmentError(f"FACTS_CATALOG_PATH does not exist: {catalog_path}")


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: Optional[int] = None) -> int:
    """Get integer value from environment variable, falling back to the known default."""
    if default is None:
        default = INTEGER_SETTINGS.get(name, (0, 0))[0]
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return int(default)
    try:
        return int(value)
    except ValueError:
        logger.warning("Environment variable %s=%r is not an integer; using %s", name, value, default)
        return int(default)
