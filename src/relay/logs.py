from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

ROOT_LOGGER = "relay"
CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s"


def configure_logging(level: str = "WARNING", log_file: Path | None = None) -> logging.Logger:
    """Attach console (and optionally rotating file) handlers to the package logger.

    Calling it again replaces the handlers installed by a previous call, so the
    CLI can reconfigure per invocation without duplicating output.
    """
    log_level = getattr(logging, str(level).upper(), logging.WARNING)
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG if log_file else log_level)

    for handler in list(logger.handlers):
        if getattr(handler, "_relay_handler", False):
            logger.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(log_level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
    console._relay_handler = True  # type: ignore[attr-defined]
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        file_handler._relay_handler = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    return logger
