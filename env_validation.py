"""Environment variable validation and management."""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CASES_PATH = str(Path(__file__).resolve().parent / "clinical_cases.json")


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


@dataclass(frozen=True)
class Settings:
    db_path: str
    cases_path: str
    results_api_url: Optional[str]
    results_api_token: Optional[str]
    sync_timeout_seconds: float
    sync_on_startup: bool


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_float(name: str, default: float) -> float:
    """Get a positive float from an environment variable."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise EnvironmentError(f"Invalid number for {name}: {raw}") from None
    if value <= 0:
        raise EnvironmentError(f"{name} must be greater than zero, got {raw}")
    return value


def validate_environment() -> Settings:
    """Validate configuration and return the resolved settings.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "CASE_DB_PATH": os.getenv("CASE_DB_PATH") or "case_history.db",
        "CASES_PATH": os.getenv("CASES_PATH") or DEFAULT_CASES_PATH,
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars: Dict[str, str] = {
        "RESULTS_API_URL": "Remote results store base URL",
        "RESULTS_API_TOKEN": "Remote results store authorization header",
    }

    # Validate URLs
    url_vars = {"RESULTS_API_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    timeout = get_env_float("SYNC_TIMEOUT_SECONDS", 10.0)

    cases_path = os.environ["CASES_PATH"]
    if not Path(cases_path).exists():
        raise EnvironmentError(f"Case dataset not found at CASES_PATH: {cases_path}")

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)

    return Settings(
        db_path=os.environ["CASE_DB_PATH"],
        cases_path=cases_path,
        results_api_url=os.getenv("RESULTS_API_URL") or None,
        results_api_token=os.getenv("RESULTS_API_TOKEN") or None,
        sync_timeout_seconds=timeout,
        sync_on_startup=get_env_bool("SYNC_ON_STARTUP", False),
    )
