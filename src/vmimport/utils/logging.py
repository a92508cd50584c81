"""Structured logging for vmimport."""

from __future__ import annotations

import logging

from rich.logging import RichHandler

ROOT_LOGGER = "vmimport"


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = RichHandler(
            show_time=True,
            show_path=False,
            markup=True,
            rich_tracebacks=True,
        )
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    return root


def get_logger(name: str) -> logging.Logger:
    """Get a logger that reports through the shared vmimport handler.

    Loggers outside the ``vmimport`` namespace get their own handler so
    scripts embedding the engine still see output.
    """
    root = _configure_root()
    if name == ROOT_LOGGER:
        return root
    logger = logging.getLogger(name)
    if not name.startswith(ROOT_LOGGER + ".") and not logger.handlers:
        for handler in root.handlers:
            logger.addHandler(handler)
        logger.setLevel(root.level)
    return logger


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG, INFO, WARNING, ERROR)."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    _configure_root().setLevel(numeric)
