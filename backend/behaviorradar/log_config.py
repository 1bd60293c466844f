"""
Logging for Behavior Radar.

loguru carries the human-facing log lines from every module; structlog carries
structured audit records (ingestion rejections and the like) whose fields are
filtered for account data before rendering. Standard library logging from
uvicorn, SQLAlchemy and APScheduler is routed into loguru.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

import structlog
from loguru import logger
from structlog.typing import EventDict, Processor, WrappedLogger

from behaviorradar.config import Settings, settings

# Libraries that log every statement or job tick at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "apscheduler", "httpx", "httpcore")

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


class AccountRedactionFilter:
    """Mask account identifiers and portfolio figures in structured records."""

    SENSITIVE_KEYS = ("account", "portfolio_exposure", "token", "secret", "password", "email")

    def __call__(self, logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
        for key in event_dict:
            if key != "event" and any(marker in key.lower() for marker in self.SENSITIVE_KEYS):
                event_dict[key] = "[REDACTED]"
        return event_dict


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru at the caller's frame."""

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


def _loguru_sinks(config: Settings) -> List[Dict[str, Any]]:
    as_json = config.log_format == "json"
    common = {
        "level": config.log_level,
        "format": "{message}" if as_json else _TEXT_FORMAT,
        "serialize": as_json,
        "backtrace": True,
        "diagnose": config.is_development,
    }
    sinks = [dict(common, sink=sys.stderr)]
    if config.log_file:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
        sinks.append(dict(common, sink=config.log_file, rotation="100 MB", retention="14 days", compression="zip"))
    return sinks


def _structlog_processors(config: Settings) -> List[Processor]:
    renderer = structlog.processors.JSONRenderer() if config.log_format == "json" else structlog.dev.ConsoleRenderer()
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        AccountRedactionFilter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def configure_logging(config: Settings = settings) -> None:
    """Install loguru sinks, configure structlog and intercept stdlib logging."""
    logger.configure(handlers=_loguru_sinks(config))

    structlog.configure(
        processors=_structlog_processors(config),
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(config.log_level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug(f"Logging configured: level={config.log_level} format={config.log_format} env={config.app_env}")


def get_logger(component: str) -> Any:
    """Structured logger with the component bound to every record."""
    return structlog.get_logger().bind(component=component)


configure_logging()
