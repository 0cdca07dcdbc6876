"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

DEFAULTS: Dict[str, str] = {
    "DB_PATH": "data.db",
    "EVALUATOR_URL": "https://api.openai.com/v1/chat/completions",
    "EVALUATOR_MODEL": "gpt-4o",
    "EMBEDDING_BACKEND": "openai",
    "EMBEDDING_URL": "https://api.openai.com/v1/embeddings",
    "EMBEDDING_MODEL": "text-embedding-3-small",
}

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Every setting has a usable default; only the API key is reported when
    # missing because remote calls will be rejected without it.
    for var, value in DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "EVALUATOR_API_KEY": "Bearer token for the evaluation service",
        "EMBEDDING_API_KEY": "Bearer token for the embedding service (defaults to EVALUATOR_API_KEY)",
    }

    url_vars = {"EVALUATOR_URL", "EMBEDDING_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    backend = os.getenv("EMBEDDING_BACKEND", "").strip().lower()
    if backend not in {"openai", "sentence-transformers", "hash"}:
        raise EnvironmentError(f"Unsupported EMBEDDING_BACKEND: {backend}")

    for var in ("EVALUATOR_TIMEOUT", "EVALUATOR_TEMPERATURE"):
        value = os.getenv(var)
        if value:
            try:
                float(value)
            except ValueError as exc:
                raise EnvironmentError(f"{var} must be numeric, got {value!r}") from exc

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        logger.warning("Ignoring malformed integer for %s: %r", name, raw)
        return default

def get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        logger.warning("Ignoring malformed number for %s: %r", name, raw)
        return default
