"""
Utility functions for the Support Desk chat service.

This module provides:
- Environment variable loading with typed defaults
- Logging configuration with structured JSON output
- Timing utilities for performance measurement
- Input sanitization for safe logging
"""

import os
import re
import sys
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from dotenv import load_dotenv
from loguru import logger


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


# Optional environment variables with defaults. Every policy knob of the
# matcher and decision engine lives here so it can be tuned per deployment.
DEFAULT_SETTINGS: Dict[str, Any] = {
    "LOG_LEVEL": "INFO",
    "FAQ_DATA_PATH": "",
    "FAQ_CACHE_TTL_SECONDS": 300,
    "FAQ_SCORE_CEILING": 15.0,
    "FAQ_CONFIDENCE_THRESHOLD": 0.3,
    "ESCALATION_WINDOW_TURNS": 4,
    "LOW_CONFIDENCE_ESCALATION_COUNT": 2,
    "COMPLEX_QUERY_WORD_LIMIT": 30,
    "COMPLEX_QUERY_QUESTION_LIMIT": 2,
    "HISTORY_FETCH_LIMIT": 10,
    "CONVERSATION_TTL_HOURS": 24,
    "CLEANUP_INTERVAL_MINUTES": 60,
    "CORS_ALLOWED_ORIGINS": "*",
}

INT_SETTINGS = {
    "FAQ_CACHE_TTL_SECONDS",
    "ESCALATION_WINDOW_TURNS",
    "LOW_CONFIDENCE_ESCALATION_COUNT",
    "COMPLEX_QUERY_WORD_LIMIT",
    "COMPLEX_QUERY_QUESTION_LIMIT",
    "HISTORY_FETCH_LIMIT",
    "CONVERSATION_TTL_HOURS",
    "CLEANUP_INTERVAL_MINUTES",
}

FLOAT_SETTINGS = {"FAQ_SCORE_CEILING", "FAQ_CONFIDENCE_THRESHOLD"}


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure structured JSON logging with Loguru.

    Args:
        level: Minimum log level, defaults to the LOG_LEVEL environment variable
    """
    # Remove default handler
    logger.remove()

    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        serialize=True
    )

    logger.info("Logging configuration complete")


def load_and_validate_env() -> Dict[str, Any]:
    """
    Load and validate environment variables.

    Returns:
        Dict[str, Any]: Configuration dictionary with validated values

    Raises:
        ConfigurationError: If a policy value is outside its allowed range
    """
    load_dotenv()

    config = {}

    for var, default in DEFAULT_SETTINGS.items():
        value = os.getenv(var, default)
        if var in INT_SETTINGS:
            try:
                config[var] = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
                config[var] = default
        elif var in FLOAT_SETTINGS:
            try:
                config[var] = float(value)
            except (TypeError, ValueError):
                logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
                config[var] = default
        else:
            config[var] = value

    validate_config(config)

    logger.info("Environment configuration loaded and validated")
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """
    Check the ranges of the policy knobs.

    Raises:
        ConfigurationError: If any value is out of range
    """
    threshold = config.get("FAQ_CONFIDENCE_THRESHOLD", 0.3)
    if not 0.0 <= threshold <= 1.0:
        raise ConfigurationError(f"FAQ_CONFIDENCE_THRESHOLD must be within [0, 1], got {threshold}")

    if config.get("FAQ_SCORE_CEILING", 15.0) <= 0:
        raise ConfigurationError("FAQ_SCORE_CEILING must be positive")

    for var in ("ESCALATION_WINDOW_TURNS", "HISTORY_FETCH_LIMIT", "LOW_CONFIDENCE_ESCALATION_COUNT"):
        if config.get(var, 1) < 1:
            raise ConfigurationError(f"{var} must be at least 1")


def generate_message_id() -> str:
    """
    Generate a unique message ID using UUID4.

    Returns:
        str: Unique message ID
    """
    return str(uuid.uuid4())


def generate_session_id() -> str:
    """Generate a session identifier matching the accepted session ID format."""
    return f"session_{uuid.uuid4().hex[:16]}"


SENSITIVE_PATTERNS = [
    r'sk-[a-zA-Z0-9]+',  # API keys starting with sk-
    r'Bearer\s+[a-zA-Z0-9]+',  # Bearer tokens
    r'[\w.+-]+@[\w-]+\.[\w.]+',  # Email addresses
    r'\b[A-Za-z0-9]{20,}\b'  # Long alphanumeric strings (potential tokens)
]


def sanitize_for_logging(text: str, max_length: int = 200) -> str:
    """
    Sanitize user input for safe logging by removing/masking sensitive information.

    Args:
        text: Input text to sanitize
        max_length: Maximum length of sanitized text

    Returns:
        str: Sanitized text safe for logging
    """
    if not text:
        return ""

    sanitized = text
    for pattern in SENSITIVE_PATTERNS:
        sanitized = re.sub(pattern, '[REDACTED]', sanitized, flags=re.IGNORECASE)

    # Truncate if too long
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


class Timer:
    """Context manager for timing operations."""

    def __init__(self, operation_name: str = "operation"):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = get_utc_datetime()
        logger.debug(f"Starting {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = get_utc_datetime()

        if exc_type is None:
            logger.debug(f"Completed {self.operation_name}", duration_ms=self.duration_ms)
        else:
            logger.error(f"Failed {self.operation_name}", duration_ms=self.duration_ms, error=str(exc_val))

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds() * 1000
        return 0.0


def get_utc_datetime() -> datetime:
    """
    Get current datetime object in UTC timezone.

    Returns:
        datetime: Current UTC datetime object with timezone info
    """
    return datetime.now(timezone.utc)


def get_current_timestamp() -> str:
    """
    Get current timestamp in ISO format with UTC timezone.

    Returns:
        str: Current timestamp in ISO format with timezone
    """
    return get_utc_datetime().isoformat()


# Global configuration instance
_config: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """
    Get the global configuration, loading it if not already loaded.

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    global _config
    if _config is None:
        _config = load_and_validate_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() reloads it."""
    global _config
    _config = None


def initialize_app() -> Dict[str, Any]:
    """
    Initialize the application with logging and configuration.
    Call this at app startup.
    """
    setup_logging()
    config = get_config()

    logger.info(
        "Application initialization complete",
        matching={
            "score_ceiling": config["FAQ_SCORE_CEILING"],
            "confidence_threshold": config["FAQ_CONFIDENCE_THRESHOLD"]
        },
        escalation={
            "window_turns": config["ESCALATION_WINDOW_TURNS"],
            "low_confidence_count": config["LOW_CONFIDENCE_ESCALATION_COUNT"],
            "history_fetch_limit": config["HISTORY_FETCH_LIMIT"]
        }
    )
    return config
