"""loguru setup for the orchestrator process.

Managers and the broadcaster log through loguru directly; the execution
layer, uvicorn, httpx, SQLAlchemy and the Daytona SDK use stdlib logging,
which is routed into the same sink.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# Raised to WARNING: request lines, SDK polling and SQL echo drown out build progress.
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "daytona", "sqlalchemy.engine")


class _LoguruBridge(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Report the caller of logging.*, not logging's own frames.
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO") -> None:
    """Install the single stderr sink at *level*.  Repeated calls replace it."""
    level = level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=_FORMAT)

    logging.basicConfig(handlers=[_LoguruBridge()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging configured at {}", level)
