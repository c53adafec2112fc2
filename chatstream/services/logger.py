"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from chatstream.config import settings

# Remove default handler
logger.remove()

# Add console handler with color
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

if settings.log_to_file:
    LOG_DIR = Path(settings.log_dir)
    LOG_DIR.mkdir(exist_ok=True)

    # Add file handler
    logger.add(
        LOG_DIR / "chatstream_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="DEBUG",
        rotation="00:00",  # New file at midnight
        retention="7 days",
        compression="zip",
    )

# Reduce noise from network libraries
for logger_name in ("httpx", "httpcore", "asyncio"):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def log_stream_request(
    request_id: int,
    status: str,
    *,
    question: Optional[str] = None,
    duration_ms: Optional[int] = None,
    answer_chars: int = 0,
    citations: int = 0,
    error: Optional[str] = None,
) -> None:
    """Log the outcome of one streamed query."""
    request_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "status": status,
        "question": question[:100] if question else None,
        "duration_ms": duration_ms,
        "answer_chars": answer_chars,
        "citations": citations,
        "error": error,
    }
    if error:
        logger.warning(f"STREAM_REQUEST_FAILED: {request_data}")
    else:
        logger.info(f"STREAM_REQUEST: {request_data}")


def log_session_event(
    event: str,
    request_id: int,
    *,
    level: str = "INFO",
    **fields: Any,
) -> None:
    """Log a lifecycle change of one request (superseded, cancelled, timeout, unmount)."""
    event_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "request_id": request_id,
        **fields,
    }
    logger.log(level, f"SESSION_EVENT: {event_data}")
