"""
Centralized logging configuration using rich.logging.

The bridge is a headless service, so logs are its only user-facing error
channel. Call setup_logging() once at process start; every module then logs
through get_logger(__name__).
"""

import logging
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

# Global flag to track if logging has been configured
_logging_configured = False


def resolve_level(level: Union[int, str]) -> int:
    """
    Convert a level name ("debug", "INFO", ...) or number to a logging level.

    Args:
        level: Level name (case-insensitive) or numeric level

    Returns:
        Numeric logging level

    Raises:
        ValueError: If the name is not a known logging level
    """
    if isinstance(level, int):
        return level

    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def setup_logging(
    level: Union[int, str] = logging.INFO,
    show_time: bool = True,
    show_path: bool = True,
    rich_tracebacks: bool = True,
    console: Optional[Console] = None,
) -> None:
    """
    Configure rich logging for the bridge process.

    Subsequent calls are ignored to avoid duplicate handlers.

    Args:
        level: Logging level (logging.DEBUG, "info", etc.)
        show_time: Show timestamp in log messages
        show_path: Show file path in log messages
        rich_tracebacks: Enable rich formatted tracebacks for exceptions
        console: Optional rich Console instance (creates a stderr console if None)

    Example:
        >>> from deckbridge.logging_config import setup_logging
        >>> setup_logging(level="debug")
    """
    global _logging_configured

    if _logging_configured:
        return

    if console is None:
        console = Console(stderr=True)

    handler = RichHandler(
        console=console,
        show_time=show_time,
        show_path=show_path,
        rich_tracebacks=rich_tracebacks,
        markup=False,
        log_time_format="[%X]",
    )

    logging.basicConfig(
        level=resolve_level(level),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_module_level(module_name: str, level: Union[int, str]) -> None:
    """
    Set logging level for a specific module.

    Args:
        module_name: Full module name (e.g., 'deckbridge.router')
        level: Logging level

    Example:
        >>> set_module_level('deckbridge.hid_io', logging.DEBUG)
    """
    logging.getLogger(module_name).setLevel(resolve_level(level))
