"""
Logging setup for vxrelay.

All modules log through loguru. Each module grabs a bound logger with
``get_logger(__name__)`` so records carry the emitting module name, and the
server entry point calls ``configure_logging`` once with the configured level.

Stdlib ``logging`` records (uvicorn, httpx, peewee) are forwarded into loguru
by ``InterceptHandler`` so everything ends up in one stream.
"""

import logging
import sys
import traceback

from loguru import logger as _logger

from vxrelay.models.enums import LogLevel

_LEVEL_MAP = {
    LogLevel.FULL: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARNING: "WARNING",
}

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

_logger.configure(extra={"name": "vxrelay"})


class InterceptHandler(logging.Handler):
    """Route stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        _logger.bind(name=record.name).opt(exception=record.exc_info).log(
            level, record.getMessage()
        )


def get_logger(name: str):
    """Return a loguru logger bound to a module name."""
    return _logger.bind(name=name)


def configure_logging(level: LogLevel = LogLevel.INFO, log_file: str = "") -> None:
    """
    Configure loguru sinks for the process.

    Args:
        level: Verbosity level.
        log_file: Optional file path; when set, records are also appended there
            with daily rotation.
    """
    loguru_level = _LEVEL_MAP.get(level, "INFO")

    _logger.remove()
    _logger.add(
        sys.stderr,
        level=loguru_level,
        format=_FORMAT,
        backtrace=level == LogLevel.FULL,
        diagnose=level == LogLevel.FULL,
    )
    if log_file:
        _logger.add(
            log_file,
            level=loguru_level,
            format=_FORMAT,
            rotation="1 day",
            retention="14 days",
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False


def format_traceback(exc: BaseException) -> str:
    """Format an exception with its traceback for debug logging."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
