"""
Centralized logging configuration for the application.

Logs go to stderr: the MCP server may speak JSON-RPC over stdout.
"""

import logging
import os
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _resolve_level(config: Optional[AppConfig]) -> int:
    name = config.log_level if config is not None else os.getenv('LOG_LEVEL', 'INFO')
    return getattr(logging, name.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Configure the root logger once; later calls only adjust the level.

    Args:
        config: AppConfig instance, falls back to the LOG_LEVEL environment variable if None
    """
    level = _resolve_level(config)
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return

    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a module logger at the configured level.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, falls back to the LOG_LEVEL environment variable if None

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(config))
    return logger
