import logging
import sys
from mealwise.core.config import get_settings

ROOT_LOGGER_NAME = "mealwise"


def setup_logging():
    """Configure the package logger once and return it."""
    settings = get_settings()
    level = settings.log_level.upper()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
        logger.addHandler(handler)

    return logger


def get_logger(name: str):
    """Get a logger instance with the given name."""
    # Ensure the parent 'mealwise' logger is configured
    setup_logging()
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
