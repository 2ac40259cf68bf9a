"""Logging helpers shared by the vision runtime."""

from __future__ import annotations

import logging
from typing import Optional

LOGGER_NAME = "VisionMux"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _ensure_configured(child: Optional[str] = None) -> logging.Logger:
    """Return the shared logger, configuring the root handler if needed."""
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(level=logging.INFO, format=_FORMAT)
    name = f"{LOGGER_NAME}.{child}" if child else LOGGER_NAME
    return logging.getLogger(name)


def get_logger(child: Optional[str] = None) -> logging.Logger:
    """Expose the configured logger (or one of its children)."""
    return _ensure_configured(child)


def log_message(message: str, *, level: str = "info", module: Optional[str] = None) -> None:
    """Log a plain message at the requested level.

    ``module`` selects a child logger such as ``VisionMux.Vision``.
    """
    logger = _ensure_configured(module)
    level_value = getattr(logging, level.upper(), logging.INFO)
    logger.log(level_value, message)


def log_exception(
    context: str,
    exc: BaseException,
    *,
    level: str = "error",
    stack: bool = False,
    module: Optional[str] = None,
) -> None:
    """Log an exception with contextual text.

    Args:
        context: Human-friendly description of what failed.
        exc: Captured exception instance.
        level: Logging level name (info, warning, error, debug, ...).
        stack: When True, include traceback information.
        module: Optional child logger name.
    """
    logger = _ensure_configured(module)
    level_value = getattr(logging, level.upper(), logging.ERROR)
    message = f"{context} ({exc.__class__.__name__}: {exc})"
    exc_info = (type(exc), exc, exc.__traceback__) if stack else False
    logger.log(level_value, message, exc_info=exc_info)


__all__ = ["LOGGER_NAME", "get_logger", "log_message", "log_exception"]
