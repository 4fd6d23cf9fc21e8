"""Logging helpers."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"


def _file_handler(logger: logging.Logger, log_path: str) -> Optional[RotatingFileHandler]:
    target = os.path.abspath(log_path)
    for handler in logger.handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == target:
            return handler
    return None


def setup_logging(
    log_dir: str = "logs",
    level: int = logging.INFO,
    include_websockets: bool = False,
) -> tuple[logging.Logger, str]:
    """Send the ``meetingtwin`` log to ``<log_dir>/meetingtwin.log``.

    With ``include_websockets`` the websockets library logs its connection
    and frame traffic to the same file, which is the quickest way to see why
    a transcription session keeps dropping.
    """
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "meetingtwin.log")

    logger = logging.getLogger("meetingtwin")
    logger.setLevel(level)

    handler = _file_handler(logger, log_path)
    if handler is None:
        handler = RotatingFileHandler(
            log_path, maxBytes=2_000_000, backupCount=3, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)

    if include_websockets:
        ws_logger = logging.getLogger("websockets")
        ws_logger.setLevel(level)
        if handler not in ws_logger.handlers:
            ws_logger.addHandler(handler)

    return logger, log_path
