"""
Central logging configuration for stacker_lite.

Keeps engine modules at INFO (or DEBUG on request) while holding noisy
standard-library loggers at WARNING.
"""

import logging
import os
from typing import Optional

# Engine loggers whose level follows the debug switch.
LITE_MODULES = [
    "stacker_lite",
    "stacker_lite.lite_rrule_expander",
    "stacker_lite.lite_projector",
    "stacker_lite.lite_sanitizer",
    "stacker_lite.domain.action_service",
    "stacker_lite.domain.rollover",
    "stacker_lite.domain.task_controller",
    "stacker_lite.domain.task_repository",
]

_LEVEL_NAMES = ("DEBUG", "INFO", "WARNING", "ERROR")


def configure_lite_logging(debug_mode: bool = False, force_debug: Optional[bool] = None) -> None:
    """
    Configure logging levels for stacker_lite.

    Args:
        debug_mode: Whether to enable debug logging for stacker_lite modules
        force_debug: Override debug mode setting (None to use env var detection)

    Environment Variables:
        STACKER_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        STACKER_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv("STACKER_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("STACKER_LOG_LEVEL", "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    if env_log_level in _LEVEL_NAMES:
        root_level = getattr(logging, env_log_level)

    # Leave existing handlers alone so the colorized formatter from __init__ survives.
    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s - %(name)s - %(message)s"))
        root_logger.addHandler(handler)

    logger_config: dict[str, int] = {"asyncio": logging.WARNING}
    lite_level = logging.DEBUG if final_debug else logging.INFO
    for module in LITE_MODULES:
        logger_config[module] = lite_level

    for logger_name, level in logger_config.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.debug("Debug logging enabled for stacker_lite modules")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in ("stacker_lite", "asyncio"):
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
