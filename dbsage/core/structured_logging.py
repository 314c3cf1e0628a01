"""
Structured logging with structlog.

Configures structlog to output JSON lines with rotation.
Backward-compatible with stdlib logging: module-level logger.info() calls
get enriched with the same processors, including the run correlation
context bound by the orchestrators.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import sys

import structlog

from dbsage import __version__

SERVICE_NAME = "dbsage-worker"


def _inject_service(logger_name: str, method_name: str, event_dict: dict) -> dict:
    """Structlog processor: stamp service name and version on every entry."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = __version__
    return event_dict


def _lowercase_level(logger_name: str, method_name: str, event_dict: dict) -> dict:
    level = event_dict.get("level")
    if level:
        event_dict["level"] = level.lower()
    return event_dict


def setup_logging(
    log_dir: str = "logs",
    log_file: str = "dbsage.jsonl",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    log_level: int | str = logging.INFO,
) -> None:
    """Initialize structlog + stdlib logging with JSON output and rotation.

    Call once at worker startup. After this, both structlog.get_logger() and
    logging.getLogger() produce JSON lines carrying whatever run_id /
    connection_id the current task has bound via structlog.contextvars.
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _lowercase_level,
        structlog.stdlib.add_logger_name,
        _inject_service,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )

    # File handler with rotation
    file_handler = None
    try:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
    except OSError:
        # Read-only filesystem: stderr only
        file_handler = None

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    root.addHandler(console_handler)
    if file_handler:
        root.addHandler(file_handler)

    # Quiet noisy third-party loggers
    for noisy in ("httpcore", "httpx", "openai", "anthropic", "asyncio", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

