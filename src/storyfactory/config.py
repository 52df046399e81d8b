"""
Runtime configuration for the serial fiction factory.

All knobs come from environment variables (optionally loaded from a .env
file by the entry points). Malformed values raise ValueError early instead
of silently running with a surprising default.
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_DB_PATH = _PROJECT_ROOT / "data" / "storyfactory.db"
DEFAULT_EXPORT_DIR = _PROJECT_ROOT / "data" / "exports"


def get_env_int(var_name: str, default: int, min_value: int = 0, max_value: int = 1_000_000) -> int:
    """Safely get and validate an integer environment variable."""
    value = os.getenv(var_name)
    if value is None or value == "":
        return default
    try:
        int_value = int(value)
    except ValueError:
        raise ValueError(f"{var_name} must be a valid integer, got '{value}'")
    if int_value < min_value or int_value > max_value:
        raise ValueError(
            f"{var_name} must be between {min_value} and {max_value}, got {int_value}"
        )
    return int_value


def get_env_float(var_name: str, default: float, min_value: float = 0.0, max_value: float = 1e9) -> float:
    """Safely get and validate a float environment variable."""
    value = os.getenv(var_name)
    if value is None or value == "":
        return default
    try:
        float_value = float(value)
    except ValueError:
        raise ValueError(f"{var_name} must be a number, got '{value}'")
    if float_value < min_value or float_value > max_value:
        raise ValueError(
            f"{var_name} must be between {min_value} and {max_value}, got {float_value}"
        )
    return float_value


def get_env_bool(var_name: str, default: bool) -> bool:
    """Read a boolean flag ('1', 'true', 'yes', 'on' are truthy)."""
    value = os.getenv(var_name)
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{var_name} must be a boolean flag, got '{value}'")


def get_env_str(var_name: str, default: str, allowed_values: Optional[list] = None) -> str:
    """Safely get and validate a string environment variable."""
    value = os.getenv(var_name, default)
    if allowed_values and value not in allowed_values:
        raise ValueError(
            f"{var_name} must be one of {allowed_values}, got '{value}'"
        )
    return value


@dataclass
class FactorySettings:
    """Settings shared by the worker, the writer orchestrator and the status API."""

    db_path: str = str(DEFAULT_DB_PATH)

    # Writer orchestrator
    batch_size: int = 10
    max_rewrite_attempts: int = 2
    min_quality_score: float = 60.0
    inter_task_delay: float = 1.0
    quality_window: int = 10
    pause_after_errors: int = 3
    generate_summaries: bool = False
    default_publish_slot: str = "evening"

    # Text generation
    llm_provider: str = "gemini"
    llm_model: Optional[str] = None
    llm_temperature: float = 0.8
    llm_max_tokens: int = 8192

    # Job queue
    job_retention_days: int = 7
    worker_poll_interval: float = 2.0
    export_dir: str = str(DEFAULT_EXPORT_DIR)

    @classmethod
    def from_env(cls) -> "FactorySettings":
        """
        Build settings from environment variables.

        Returns:
            FactorySettings populated from the environment

        Raises:
            ValueError: If a variable is set to a malformed or out-of-range value
        """
        settings = cls(
            db_path=get_env_str("STORYFACTORY_DB_PATH", str(DEFAULT_DB_PATH)),
            batch_size=get_env_int("WRITER_BATCH_SIZE", 10, min_value=1, max_value=500),
            max_rewrite_attempts=get_env_int("WRITER_MAX_REWRITE_ATTEMPTS", 2, max_value=10),
            min_quality_score=get_env_float("WRITER_MIN_QUALITY_SCORE", 60.0, max_value=100.0),
            inter_task_delay=get_env_float("WRITER_INTER_TASK_DELAY", 1.0, max_value=600.0),
            quality_window=get_env_int("WRITER_QUALITY_WINDOW", 10, min_value=1, max_value=1000),
            pause_after_errors=get_env_int("WRITER_PAUSE_AFTER_ERRORS", 3, min_value=1, max_value=1000),
            generate_summaries=get_env_bool("WRITER_GENERATE_SUMMARIES", False),
            default_publish_slot=get_env_str("WRITER_DEFAULT_SLOT", "evening"),
            llm_provider=get_env_str("LLM_PROVIDER", "gemini", allowed_values=["gemini"]),
            llm_model=os.getenv("LLM_MODEL") or None,
            llm_temperature=get_env_float("LLM_TEMPERATURE", 0.8, max_value=2.0),
            llm_max_tokens=get_env_int("LLM_MAX_TOKENS", 8192, min_value=256, max_value=65536),
            job_retention_days=get_env_int("JOB_RETENTION_DAYS", 7, min_value=1, max_value=3650),
            worker_poll_interval=get_env_float("WORKER_POLL_INTERVAL", 2.0, max_value=3600.0),
            export_dir=get_env_str("EXPORT_DIR", str(DEFAULT_EXPORT_DIR)),
        )
        logger.debug(f"Loaded factory settings: {settings}")
        return settings
