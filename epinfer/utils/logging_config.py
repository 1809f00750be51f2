"""
Logging configuration for the inference pipeline.

Provides a centralized logging setup with consistent formatting across all modules.

Usage:
    from epinfer.utils.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("Global search with %d starts", num_guesses)
    logger.debug("IF2 iteration %d: loglik=%.2f", iteration, loglik)
    logger.warning("%d of %d starts collapsed", failed, total)

Configuration:
    - LOG_LEVEL environment variable controls verbosity (DEBUG, INFO, WARNING, ERROR)
    - Default level is INFO
    - Logs to both console and file (if LOG_FILE is set)
"""

import logging
import os
import sys
from typing import Optional


# Default format includes timestamp, level, module, thread and message
DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(threadName)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logging_configured = False


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
    force: bool = False
) -> None:
    """
    Configure logging for the entire application.

    Should be called once at the start of the program (e.g., in main()).

    Parameters
    ----------
    level : str, optional
        Logging level. One of: DEBUG, INFO, WARNING, ERROR, CRITICAL.
        Defaults to LOG_LEVEL environment variable or INFO.
    log_file : str, optional
        Path to log file. If None, uses LOG_FILE environment variable.
        If neither is set, logs only to console.
    format_string : str, optional
        Custom format string. Defaults to DEFAULT_FORMAT.
    force : bool, optional
        Reconfigure even if logging was already set up. Default False.
    """
    global _logging_configured

    if _logging_configured and not force:
        return

    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if format_string is None:
        format_string = DEFAULT_FORMAT

    formatter = logging.Formatter(format_string, datefmt=DEFAULT_DATE_FORMAT)

    # Only the package logger is configured; host applications keep the root
    package_logger = logging.getLogger("epinfer")
    package_logger.setLevel(numeric_level)
    package_logger.handlers.clear()
    package_logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file is None:
        log_file = os.environ.get("LOG_FILE")

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    # Suppress verbose TensorFlow logging
    logging.getLogger("tensorflow").setLevel(logging.WARNING)
    logging.getLogger("absl").setLevel(logging.WARNING)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for the given module name.

    Automatically configures logging if not already done.

    Parameters
    ----------
    name : str
        Logger name (typically __name__).

    Returns
    -------
    logging.Logger
        Configured logger instance.

    Example
    -------
    >>> logger = get_logger(__name__)
    >>> logger.info("Particle filter with %d particles", num_particles)
    """
    if not _logging_configured:
        setup_logging()

    return logging.getLogger(name)


def set_level(level: str) -> None:
    """
    Change the logging level at runtime.

    Parameters
    ----------
    level : str
        New logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    package_logger = logging.getLogger("epinfer")
    package_logger.setLevel(numeric_level)
    for handler in package_logger.handlers:
        handler.setLevel(numeric_level)
