"""
Logging setup for the backup run: console, rotating file, and syslog/journald.
"""
import json
import logging
import socket
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler as BaseRotatingFileHandler
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Optional

from kvm_backup.core.config import Settings

APP_LOGGER = "kvm_backup"

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class JsonFormatter(logging.Formatter):
    """
    Render a log record as one JSON line.

    Structured metadata passed as ``extra={"details": {...}}`` is emitted
    under the ``details`` key.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
            "lineno": record.lineno,
        }

        details = getattr(record, "details", None)
        if details:
            log_entry["details"] = details

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')


def get_file_log_handler(
    log_file: str,
    max_bytes: int = 100 * 1024 * 1024,  # 100 MB
    backup_count: int = 10
) -> BaseRotatingFileHandler:
    """Create a rotating file handler, creating the log directory if needed."""
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    return BaseRotatingFileHandler(
        filename=str(log_path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )


def get_syslog_handler(
    script_name: str,
    address: str = "/dev/log",
    host: Optional[str] = None,
    port: int = 514
) -> SysLogHandler:
    """
    Create a syslog handler tagged with the script name.

    With no host the local ``/dev/log`` socket is used, which journald
    collects on systemd hosts.
    """
    if host:
        handler = SysLogHandler(address=(host, port), socktype=socket.SOCK_DGRAM)
    else:
        handler = SysLogHandler(address=address)
    handler.ident = f"{script_name}: "
    return handler


def setup_logging(settings: Settings) -> logging.Logger:
    """
    Attach handlers to the application logger.

    Only the ``kvm_backup`` logger is touched; the root logger is left alone.
    Handlers that cannot be created (missing syslog socket, unwritable log
    directory) are reported on stderr and skipped.
    """
    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = _build_formatter(settings.LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if settings.LOG_FILE:
        try:
            file_handler = get_file_log_handler(settings.LOG_FILE)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            print(f"Failed to setup file logging: {e}", file=sys.stderr, flush=True)

    if settings.SYSLOG_ENABLED:
        try:
            syslog_handler = get_syslog_handler(
                settings.SCRIPT_NAME,
                address=settings.SYSLOG_ADDRESS,
                host=settings.SYSLOG_HOST,
                port=settings.SYSLOG_PORT
            )
            syslog_handler.setFormatter(logging.Formatter('%(levelname)s - %(message)s'))
            logger.addHandler(syslog_handler)
        except OSError as e:
            print(f"Failed to setup syslog logging: {e}", file=sys.stderr, flush=True)

    return logger
