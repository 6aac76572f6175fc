import logging
import sys
from pathlib import Path

from loguru import logger

_initialized = False
_intercepted_loggers = (
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "fastapi",
    "sqlalchemy.engine",
    "apscheduler",
    "aiohttp",
)


def init_logging(
    level: str = "INFO",
    log_dir: Path | None = None,
    serialize: bool = False,
) -> None:
    global _initialized

    if _initialized:
        logger.warning("pixrepo.init_logging() already called, skipping")
        return

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {name}:{line} - {message}",
        colorize=True,
        serialize=serialize,
    )

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_dir / "pixrepo-{time:YYYY-MM-DD}.log"),
            level=level,
            rotation="00:00",
            retention="14 days",
            serialize=True,
            enqueue=True,
        )

    _setup_stdlib_intercept(level)

    _initialized = True
    logger.info(f"pixrepo logging initialized with level='{level}', log_dir='{log_dir}'")


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records to loguru.

    uvicorn, SQLAlchemy, APScheduler and aiohttp all log through the logging
    module. Routing them here keeps one set of sinks and one format for the
    whole process.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _setup_stdlib_intercept(level: str) -> None:
    handler = InterceptHandler()
    logging.root.handlers = [handler]
    logging.root.setLevel(level)
    for name in _intercepted_loggers:
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [handler]
        stdlib_logger.propagate = False


__all__ = ["init_logging", "InterceptHandler"]
