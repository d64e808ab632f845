"""Structured logging for the desk: JSON lines on stdout and in the log file."""
import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from tradedesk.core.config import logging_config

# Chatty third-party loggers are held at WARNING unless the desk runs quieter
QUIET_LOGGERS = ("aiosqlite", "asyncio", "ccxt")

PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
    structlog.processors.JSONRenderer(),
]


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"unknown log level {name!r}")
    return level


def _handlers(level: int, log_path: Path) -> List[logging.Handler]:
    formatter = logging.Formatter("%(message)s")
    handlers: List[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_path, encoding="utf-8"),
    ]
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers


def setup_logging(log_level: Optional[str] = None, log_file: Optional[str] = None):
    """Configure structlog on top of the stdlib root logger.

    Calling it again replaces the previous handlers, so a CLI override
    of the level or file takes effect even after an earlier setup.

    Args:
        log_level: Overrides the configured level (e.g. from the CLI)
        log_file: Overrides the configured log file path

    Returns:
        The desk's root structlog logger
    """
    level = _resolve_level(log_level or logging_config.log_level)
    log_path = Path(log_file or logging_config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(level=level, handlers=_handlers(level, log_path), force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=PROCESSORS,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("tradedesk")
