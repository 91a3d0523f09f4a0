# Logging_Config.py
# Description: Loguru sink configuration for the asset sync client
#
# Imports
import os
import sys
from typing import Optional
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from .config import get_cli_setting, get_log_file_path
#
############################################################################################################
#
# Functions:

CONSOLE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} - {level} - {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def _ensure_log_dir_exists(file_path: str) -> str:
    """Ensure the directory for the log file exists."""
    expanded_path = os.path.expanduser(file_path)
    log_dir = os.path.dirname(expanded_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    return expanded_path


def setup_logger(
    log_level: str = "INFO",
    console_format: str = CONSOLE_FORMAT,
    app_log_path: Optional[str] = None,
    json_log_path: Optional[str] = None,
):
    """
    Sets up Loguru sinks for console, a rotating application log, and an optional JSON log.

    Args:
        log_level (str): The minimum log level to output (e.g., "DEBUG", "INFO").
        console_format (str): The format string for console output.
        app_log_path (Optional[str]): Path for the text log file. If None, this sink is disabled.
        json_log_path (Optional[str]): Path for a serialized JSON log. If None, this sink is disabled.

    Returns:
        The configured logger instance.
    """
    logger.remove()

    logger.add(sys.stderr, level=log_level.upper(), format=console_format)

    if app_log_path:
        path = _ensure_log_dir_exists(app_log_path)
        logger.add(
            path,
            level=log_level.upper(),
            format=FILE_FORMAT,
            rotation="10 MB",
            retention="7 days",
            enqueue=True,
            backtrace=True,
            diagnose=False,  # locals may hold decrypted secrets
        )
        logger.info(f"Application logs will be written to: {path}")

    if json_log_path:
        path = _ensure_log_dir_exists(json_log_path)
        logger.add(
            path,
            level="DEBUG",
            serialize=True,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )
        logger.info(f"JSON logs will be written to: {path}")

    return logger


def configure_logging_from_settings(log_level: Optional[str] = None):
    """Applies the [logging] section of the loaded configuration. `log_level` overrides the configured level."""
    log_level = (log_level or get_cli_setting("logging", "log_level", "INFO")).upper()
    json_log = get_cli_setting("logging", "json_log_file", "") or None
    return setup_logger(
        log_level=log_level,
        app_log_path=str(get_log_file_path()),
        json_log_path=json_log,
    )

#
# End of Logging_Config.py
############################################################################################################
