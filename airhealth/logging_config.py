"""Logging setup for the air quality health engine."""
import logging
import re
import sys
from pathlib import Path
from typing import Iterable, Optional

from airhealth.exceptions import ConfigurationError

LOGGER_NAME = "airhealth"

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# httpx logs every request URL at INFO; WAQI URLs carry the API token
NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler")

TOKEN_PATTERN = re.compile(r"(token=)[^&\s'\"]+", re.IGNORECASE)


class TokenRedactingFilter(logging.Filter):
    """Masks ``token=...`` query parameters in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = TOKEN_PATTERN.sub(r"\1***", message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def _resolve_level(log_level: str) -> int:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ConfigurationError(
            f"Unknown log level '{log_level}'",
            details={"allowed": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]}
        )
    return level


def _reset_handlers(logger: logging.Logger):
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS
) -> logging.Logger:
    """
    Configure the application logger.

    Safe to call more than once; earlier handlers are closed and replaced.
    Every handler redacts provider tokens, and chatty third-party loggers
    are held at WARNING.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: Optional path to a log file
        quiet_loggers: Third-party loggers to raise to WARNING

    Returns:
        The ``airhealth`` logger

    Raises:
        ConfigurationError: Unknown log level
    """
    level = _resolve_level(log_level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    redactor = TokenRedactingFilter()

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    _reset_handlers(logger)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(redactor)
        logger.addHandler(handler)

    logger.propagate = False

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Child of the application logger, e.g. get_logger("ingestion.waqi")."""
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
