"""Configuration loader for the matpris ingredient price scraper."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv


DEFAULT_BATCH_SIZE = 10
DEFAULT_CANDIDATES_PER_STORE = 5
DEFAULT_RESCRAPE_COOLDOWN_DAYS = 60
# Ingredients the stores genuinely do not carry are only rechecked once a year.
DEFAULT_NO_MATCH_RECHECK_DAYS = 365
DEFAULT_ERROR_RETRY_HOURS = 0
DEFAULT_SOURCE_VERSION_TAG = "scraper_v2"


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses default locations.

    Returns:
        Dictionary with configuration values.
    """
    # Load environment variables first
    load_dotenv()

    if config_path is None:
        locations = [
            "config.yaml",
            "config.yml",
            "../config.yaml",
            "../config.yml",
            "/app/config.yaml",
        ]
        for loc in locations:
            if Path(loc).exists():
                config_path = loc
                break

    if config_path is None or not Path(config_path).exists():
        raise FileNotFoundError("Configuration file not found. Please provide config.yaml")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    return _substitute_env_vars(config)


def _substitute_env_vars(obj: Any) -> Any:
    """Recursively substitute environment variables in config.

    Supports syntax: ${VAR_NAME} or ${VAR_NAME:default_value}
    """
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        return _substitute_env_string(obj)
    else:
        return obj


def _substitute_env_string(value: str) -> str:
    """Substitute environment variables in a string."""
    pattern = r'\$\{([^}]+)\}'

    def replace(match):
        var_expr = match.group(1)
        if ':' in var_expr:
            var_name, default = var_expr.split(':', 1)
            return os.getenv(var_name, default)
        else:
            return os.getenv(var_expr, match.group(0))

    return re.sub(pattern, replace, value)


def _safe_int(value: Any, fallback: int, minimum: int = 0) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return fallback
    return parsed if parsed >= minimum else fallback


def get_batch_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Get batch settings with env-friendly coercion and defaults."""
    batch = config.get("batch", {})
    if not isinstance(batch, dict):
        batch = {}
    tag = str(batch.get("source_version_tag") or "").strip()
    return {
        "batch_size": _safe_int(batch.get("batch_size"), DEFAULT_BATCH_SIZE, minimum=1),
        "candidates_per_store": _safe_int(
            batch.get("candidates_per_store"), DEFAULT_CANDIDATES_PER_STORE, minimum=1
        ),
        "rescrape_cooldown_days": _safe_int(
            batch.get("rescrape_cooldown_days"), DEFAULT_RESCRAPE_COOLDOWN_DAYS
        ),
        "no_match_recheck_days": _safe_int(
            batch.get("no_match_recheck_days"), DEFAULT_NO_MATCH_RECHECK_DAYS
        ),
        "error_retry_hours": _safe_int(batch.get("error_retry_hours"), DEFAULT_ERROR_RETRY_HOURS),
        "source_version_tag": tag or DEFAULT_SOURCE_VERSION_TAG,
    }


def get_scraping_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Get scraping configuration."""
    return config.get("scraping", {})


def get_oracle_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Get selection oracle configuration."""
    return config.get("oracle", {})


def ensure_directories(config: Dict[str, Any]):
    """Ensure all required directories exist."""
    storage = config.get("storage", {})

    sqlite_path = storage.get("sqlite", {}).get("database_path", "data/matpris.db")
    if sqlite_path != ":memory:":
        Path(sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    log_path = config.get("logging", {}).get("file", "data/logs/matpris.log")
    Path(log_path).parent.mkdir(parents=True, exist_ok=True)
