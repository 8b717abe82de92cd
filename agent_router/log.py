"""Loguru setup for entry points.

Library modules just ``from loguru import logger``; only the process entry
point calls ``setup_logging()``.
"""

import logging
import sys

from loguru import logger

_FMT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


class _InterceptHandler(logging.Handler):
    """Send stdlib ``logging`` records (uvicorn, litellm, ...) through loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: str = "INFO",
    *,
    log_file: str | None = None,
    intercept_stdlib: bool = True,
) -> None:
    logger.remove()
    logger.add(sys.stderr, format=_FMT, level=level.upper(), backtrace=True, diagnose=False)

    if log_file:
        logger.add(
            log_file,
            format=_FMT,
            level=level.upper(),
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )

    if intercept_stdlib:
        logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
