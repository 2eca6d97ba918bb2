"""
Central logging configuration for the TRMNL emulator.

Keeps the emulator's own lifecycle messages visible while quieting verbose
debug output from the HTTP and imaging libraries.
"""

import logging
import os
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)s - %(name)s - %(message)s"

# Third-party loggers that are noisy at DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "PIL", "asyncio", "charset_normalizer")

EMULATOR_LOGGER = "trmnl_emulator"


def configure_logging(level: str = "INFO", force_debug: Optional[bool] = None) -> None:
    """
    Configure logging for the emulator.

    Args:
        level: Level name for the emulator loggers (DEBUG, INFO, WARNING, ERROR)
        force_debug: Override the level with DEBUG (None to use env var detection)

    Environment Variables:
        TRMNL_DEBUG: Set to '1', 'true', 'yes' to force debug logging
    """
    env_debug = os.getenv("TRMNL_DEBUG", "").lower() in ("1", "true", "yes")
    debug = force_debug if force_debug is not None else env_debug

    emulator_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(emulator_level)

    # Only add a handler if none exist (keeps pytest's capture handlers intact)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(handler)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger(EMULATOR_LOGGER).setLevel(emulator_level)

    root_logger.debug(
        "Logging configured: emulator=%s, third-party=WARNING",
        logging.getLevelName(emulator_level),
    )


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in (EMULATOR_LOGGER, *NOISY_LOGGERS):
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
