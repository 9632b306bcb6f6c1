"""
Structured logging for the guard engine.

structlog renders through stdlib logging so third-party records (aiohttp,
SQLAlchemy) land in the same stream. Credentials never reach a log line: the
redaction processor runs before any renderer.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, List, Optional

import structlog

REDACTED = "***REDACTED***"
SENSITIVE_KEY_FRAGMENTS = ("api_key", "secret", "signature", "token", "password", "authorization")

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if any(f in str(k).lower() for f in SENSITIVE_KEY_FRAGMENTS) else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    return value


def redact_credentials(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    """structlog processor: mask values whose key looks like a credential."""
    return _redact(event_dict)


def _processors(log_format: str) -> List[Any]:
    chain: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        chain.append(structlog.processors.JSONRenderer(default=str))
    else:
        chain.append(structlog.dev.ConsoleRenderer())
    return chain


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: Optional[str] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: "json" for one object per line, "text" for the console renderer
        log_file: Optional path; adds a size-rotated copy of the stdout stream
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.root.setLevel(level)

    structlog.configure(
        processors=_processors(log_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if not log_file:
        return

    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.root.addHandler(handler)
    get_logger(__name__).info("LOG_FILE_ATTACHED", log_file=str(path), log_level=log_level, log_format=log_format)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger for a module; call as get_logger(__name__)."""
    return structlog.get_logger(name)


def bind_cycle_context(cycle_id: str, **extra) -> None:
    """Attach the monitor cycle id (and any extra keys) to every log line until cleared."""
    structlog.contextvars.bind_contextvars(cycle_id=cycle_id, **extra)


def clear_cycle_context() -> None:
    structlog.contextvars.clear_contextvars()
