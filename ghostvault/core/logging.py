"""
structlog configuration for the daemon, the API server and the CLI.
Log records go to the terminal and to a rotating file under gv_home.
"""

import sys
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional
from pathlib import Path

import structlog
from rich.console import Console
from rich.logging import RichHandler

from .config import settings


LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 3


def setup_logging(log_file: Optional[str] = None, console: bool = True) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_file: Optional path to log file, defaults to <gv_home>/logs/ghostvault.log
        console: Also log to the terminal
    """
    logging.getLogger().handlers.clear()

    timestamper = structlog.processors.TimeStamper(fmt="ISO")

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=settings.is_development)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        timestamper,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level)
    handlers = []

    if console:
        if settings.is_development and settings.log_format != "json":
            rich_handler = RichHandler(
                console=Console(file=sys.stderr),
                show_time=True,
                show_path=True,
                rich_tracebacks=True,
            )
            rich_handler.setLevel(level)
            handlers.append(rich_handler)
        else:
            stream_handler = logging.StreamHandler(sys.stdout)
            stream_handler.setLevel(level)
            stream_handler.setFormatter(logging.Formatter('%(message)s'))
            handlers.append(stream_handler)

    # 10 MB x 3 rotating file log
    file_path = Path(log_file) if log_file else settings.log_path
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        file_path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter('%(message)s'))
    handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiogram").setLevel(logging.WARNING)
