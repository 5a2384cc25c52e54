"""Logging utilities for modforge builds."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict

if TYPE_CHECKING:
    from .errors import BuildError

_LOGGER_NAME = "modforge"
_CONSOLE_FORMAT = "[modforge] %(levelname)s %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

SEVERITY_LEVELS: Dict[str, int] = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger under the modforge hierarchy (``modforge.<name>``)."""
    full_name = f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME
    return logging.getLogger(full_name)


def configure_logging(
    *, verbose: bool = False, log_file: Path | None = None
) -> logging.Logger:
    """Attach console and optional file handlers to the ``modforge`` logger.

    The file sink always records DEBUG so a failed build can be inspected after a
    quiet console run.
    """
    console_level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG if log_file is not None else console_level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        sink = logging.FileHandler(log_file, encoding="utf-8")
        sink.setLevel(logging.DEBUG)
        sink.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(sink)

    return logger


def log_diagnostic(
    logger: logging.Logger,
    stage: str,
    severity: str,
    message: str,
    identifier: str | None = None,
) -> None:
    """Log a build diagnostic at the level matching its severity."""
    level = SEVERITY_LEVELS.get(severity, logging.INFO)
    if identifier:
        logger.log(level, "%s: %s (%s)", stage, message, identifier)
    else:
        logger.log(level, "%s: %s", stage, message)


def log_build_error(logger: logging.Logger, error: "BuildError") -> None:
    """Log a fatal stage failure with its stage and identifier."""
    logger.error("Build failed: %s", error.describe())
    logger.debug("Failure detail", exc_info=error)


__all__ = [
    "SEVERITY_LEVELS",
    "configure_logging",
    "get_logger",
    "log_build_error",
    "log_diagnostic",
]
