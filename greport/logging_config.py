"""Log file setup for test runners that record results in the ledger.

The library modules only create module loggers and never touch handlers.
A test runner calls :func:`configure_logging` once at start-up, before the
first :func:`greport.report.update_test_result_by_name`, so retries and
lost writes end up in ``greport.log`` next to the OAuth files::

    from greport import logging_config, report

    logging_config.configure_logging()
    report.update_test_result_by_name("login", "PASS", "Run1", True, DOC_ID)

The level defaults to ``GREPORT_LOG_LEVEL`` (a level name such as
``DEBUG``) and falls back to ``INFO``.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from greport.settings import get_conf

LOG_FILE_NAME = "greport.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV = "GREPORT_LOG_LEVEL"

_LOG_PATH: Optional[Path] = None


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.getenv(LOG_LEVEL_ENV, "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def _has_file_handler(root_logger: logging.Logger, log_path: Path) -> bool:
    target = os.path.abspath(log_path)
    return any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == target
        for handler in root_logger.handlers
    )


def configure_logging(
    level: Union[int, str, None] = None,
    log_path: Optional[Path] = None,
) -> Path:
    """Attach a file handler for the ledger log to the root logger.

    Only the first call has an effect; later calls return the path chosen
    then.  ``level`` may be a number or a level name.  ``log_path`` defaults
    to ``greport.log`` inside the configuration directory.
    """

    global _LOG_PATH

    if _LOG_PATH is not None:
        return _LOG_PATH

    numeric_level = _resolve_level(level)
    log_path = Path(log_path) if log_path else get_conf().directory / LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    if root_logger.handlers:
        # Never raise the threshold a host runner already lowered.
        root_logger.setLevel(min(root_logger.level, numeric_level))
    else:
        root_logger.setLevel(numeric_level)

    if not _has_file_handler(root_logger, log_path):
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(file_handler)

    _LOG_PATH = log_path
    root_logger.debug("Ledger log at %s", log_path)
    return log_path


def get_log_path() -> Path:
    """Return the ledger log path, configuring logging on first use."""

    if _LOG_PATH is None:
        return configure_logging()
    return _LOG_PATH


__all__ = ["LOG_FILE_NAME", "LOG_FORMAT", "LOG_LEVEL_ENV", "configure_logging", "get_log_path"]
