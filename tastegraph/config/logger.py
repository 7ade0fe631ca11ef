"""
Loguru setup for TasteGraph.

Console output always; when LOG_TO_FILE is on, four rotating files under
LOG_DIR:
- app.log: everything from DEBUG up
- errors.log: ERROR and above, kept longest
- requests.log: one START/END/ERROR line per HTTP request
- performance.log: timings of graph calls and whole recommendation runs

Request and performance lines are routed by a ``channel`` bound on the
record, so their wording can change without breaking the file filters.
"""

import sys
from pathlib import Path
from typing import Optional

from fastapi import Request
from loguru import logger

from tastegraph.config.settings import settings

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
CHANNEL_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}"
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

REQUEST_CHANNEL = "request"
PERFORMANCE_CHANNEL = "performance"


def _channel(name: str):
    return lambda record: record["extra"].get("channel") == name


class LoguruConfig:
    """Sinks for the API process."""

    def __init__(self, app_name: str = "tastegraph", logs_dir: str = "logs"):
        self.app_name = app_name
        self.logs_dir = Path(logs_dir)

    def setup_logger(self, log_level: str = "INFO", log_to_file: bool = True) -> None:
        logger.remove()
        logger.add(
            sys.stdout,
            format=CONSOLE_FORMAT,
            level=log_level,
            colorize=True,
            backtrace=True,
            diagnose=False,
        )

        if not log_to_file:
            return

        self.logs_dir.mkdir(parents=True, exist_ok=True)
        # (file, level, rotation, retention, format, filter)
        sinks = [
            ("app.log", "DEBUG", "10 MB", "7 days", FILE_FORMAT, None),
            ("errors.log", "ERROR", "5 MB", "30 days", FILE_FORMAT, None),
            ("requests.log", "INFO", "20 MB", "14 days", CHANNEL_FORMAT, _channel(REQUEST_CHANNEL)),
            ("performance.log", "INFO", "10 MB", "7 days", CHANNEL_FORMAT, _channel(PERFORMANCE_CHANNEL)),
        ]
        for filename, level, rotation, retention, fmt, record_filter in sinks:
            logger.add(
                self.logs_dir / filename,
                format=fmt,
                level=level,
                rotation=rotation,
                retention=retention,
                compression="zip",
                encoding="utf-8",
                filter=record_filter,
                backtrace=record_filter is None,
                diagnose=False,
            )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def log_request_start(request: Request) -> None:
    logger.bind(channel=REQUEST_CHANNEL).info(
        "REQUEST START: {method} {path}",
        method=request.method,
        path=request.url.path,
        query=str(request.query_params),
        client_ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def log_request_end(request: Request, status_code: int, process_time: float) -> None:
    logger.bind(channel=REQUEST_CHANNEL).info(
        "REQUEST END: {method} {path} - {status_code} ({process_time:.4f}s)",
        method=request.method,
        path=request.url.path,
        status_code=status_code,
        process_time=process_time,
        client_ip=_client_ip(request),
    )


def log_request_error(request: Request, error: Exception, process_time: float) -> None:
    """Unhandled exception escaping a route; the traceback goes to errors.log."""
    logger.bind(channel=REQUEST_CHANNEL).error(
        "REQUEST ERROR: {method} {path} - {error_type}: {error} ({process_time:.4f}s)",
        method=request.method,
        path=request.url.path,
        error_type=type(error).__name__,
        error=str(error),
        process_time=process_time,
        client_ip=_client_ip(request),
    )


def log_performance(operation: str, duration: float, **fields) -> None:
    """Timing line for performance.log; extra fields are appended as key=value pairs."""
    details = " ".join(f"{key}={value}" for key, value in fields.items())
    logger.bind(channel=PERFORMANCE_CHANNEL, operation=operation, duration=duration, **fields).info(
        f"PERFORMANCE: {operation} took {duration:.4f}s {details}".rstrip()
    )


loguru_config = LoguruConfig(logs_dir=settings.LOG_DIR)
loguru_config.setup_logger(log_level=settings.LOG_LEVEL, log_to_file=settings.LOG_TO_FILE)

app_logger = logger
