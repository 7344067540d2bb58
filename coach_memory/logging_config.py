"""
Centralized logging configuration for the memory engine.
"""

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure the root logger with a stdout handler.

    Args:
        level: Level name (e.g. "DEBUG"). Defaults to MEMORY_LOG_LEVEL or INFO.
    """
    level = (level or os.getenv('MEMORY_LOG_LEVEL', 'INFO')).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO),
                        format=LOG_FORMAT,
                        handlers=[logging.StreamHandler(sys.stdout)])


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
