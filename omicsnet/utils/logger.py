"""
Logging helpers for omicsnet.

All modules obtain their logger through ``get_logger(__name__)``. The package
root logger gets a single rich console handler on first use; the level is read
from the ``OMICSNET_LOG_LEVEL`` environment variable.
"""

import logging
import os

from rich.logging import RichHandler

PACKAGE_LOGGER_NAME = "omicsnet"
LOG_LEVEL_ENV = "OMICSNET_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"

_configured = False


def _configure_package_logger() -> None:
    global _configured
    if _configured:
        return

    root = logging.getLogger(PACKAGE_LOGGER_NAME)
    level_name = os.environ.get(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL).upper()
    root.setLevel(getattr(logging, level_name, logging.WARNING))

    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(handler)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger under the omicsnet namespace.

    Args:
        name: Usually ``__name__`` of the calling module

    Returns:
        Configured ``logging.Logger``
    """
    _configure_package_logger()
    if not name.startswith(PACKAGE_LOGGER_NAME):
        name = f"{PACKAGE_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: str) -> None:
    """Change the package log level at runtime (e.g. ``"DEBUG"``)."""
    _configure_package_logger()
    logging.getLogger(PACKAGE_LOGGER_NAME).setLevel(level.upper())
