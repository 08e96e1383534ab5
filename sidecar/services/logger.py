"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from loguru import logger

from sidecar.config import Settings, settings as default_settings

_NOISY_LOGGERS = (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "httpx",
    "httpcore",
    "openai._base_client",
    "chromadb",
    "aiosqlite",
    "asyncio",
)


def configure_logging(settings: Settings | None = None) -> None:
    """Install the console and rotating file sinks."""
    settings = settings or default_settings
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=settings.app_log_level.upper(),
        colorize=True,
    )
    logger.add(
        log_dir / "sidecar_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
    )

    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _stamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log an oracle call."""
    call_data = {
        "timestamp": _stamp(),
        "model": model,
        "caller": caller,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "duration_ms": duration_ms,
        "status": status,
        "error": error,
    }
    if error:
        logger.error(f"LLM_CALL_FAILED: {call_data}")
    else:
        logger.info(f"LLM_CALL: {call_data}")


def log_task_event(
    task_id: str,
    event_type: str,
    status: str,
    data: Optional[dict[str, Any]] = None,
) -> None:
    """Log a research task lifecycle transition."""
    task_data = {
        "timestamp": _stamp(),
        "task_id": task_id,
        "event_type": event_type,
        "status": status,
        "data": data,
    }
    logger.info(f"TASK_EVENT: {task_data}")


def log_injection(
    session_id: str,
    query: str,
    *,
    tokens: int,
    level: int,
    session_tokens: int,
    trigger_reason: str,
) -> None:
    """Log a research block handed back to a session."""
    injection_data = {
        "timestamp": _stamp(),
        "session_id": session_id,
        "query": query,
        "tokens": tokens,
        "session_tokens": session_tokens,
        "level": level,
        "trigger_reason": trigger_reason,
    }
    logger.info(f"INJECTION: {injection_data}")


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a database operation."""
    op_data = {
        "timestamp": _stamp(),
        "operation": operation,
        "table": table,
        "status": status,
        "details": details,
        "error": error,
    }
    if error:
        logger.error(f"DB_OPERATION_FAILED: {op_data}")
    else:
        logger.debug(f"DB_OPERATION: {op_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs: Any,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": _stamp(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
