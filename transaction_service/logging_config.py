"""
logging_config.py — Centralized Logging Configuration for the Transaction Service

This module configures unified logging behavior for the entire application.
It ensures that all modules log messages consistently to both console and file.

Features:
    • Combined console and file logging output
    • Process ID tagging for multi-process visibility
    • Standardized log format for all modules
    • Reduced verbosity for collaborator libraries (pika, httpx)
"""

import logging
import sys

from .config import LOG_FILE, LOG_LEVEL


def setup_logging(log_file: str = LOG_FILE, level: str = LOG_LEVEL):
    """
    Configures the global logging system for the application.

    The configuration includes:
        - Log level: taken from LOG_LEVEL (INFO by default)
        - Log format: timestamp, log level, process ID, logger name and message
        - Output destinations:
            1. File: LOG_FILE (persistent log, used by operators to reconcile stock)
            2. Console (stdout): real-time logs, Docker/Kubernetes compatible
        - Reduced verbosity for third-party libraries such as pika and httpx

    Args:
        log_file (str): Path of the persistent log file. Pass an empty string to log to stdout only.
        level (str): Name of the root log level (e.g. 'DEBUG', 'INFO').
    """
    log_format = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=log_format,
        handlers=handlers,
    )

    # Reduce verbosity from external libraries
    logging.getLogger("pika").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name):
    """
    Returns a configured logger instance for a given module or component name.

    Args:
        name (str): The logger name, typically the module’s __name__.

    Returns:
        logging.Logger: A logger that follows the global format and handlers.
    """
    return logging.getLogger(name)
