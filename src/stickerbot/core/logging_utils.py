from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from .config import LogConfig

_MAX_VALUE_CHARS = 400
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def sanitize_log_value(value: Any, *, max_chars: int = _MAX_VALUE_CHARS) -> Any:
    """Return a JSON-safe, length-bounded representation of a log field."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<{len(value)} bytes>"
    if isinstance(value, BaseException):
        text = f"{type(value).__name__}: {value}"
    elif isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_log_value(item, max_chars=max_chars) for item in value]
    elif isinstance(value, dict):
        return {
            str(key): sanitize_log_value(item, max_chars=max_chars)
            for key, item in value.items()
        }
    else:
        text = str(value)
    text = text.replace("\r", "\\r").replace("\n", "\\n")
    if len(text) > max_chars:
        return text[: max_chars - 3] + "..."
    return text


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit one structured log line: `<event> {json fields}`."""

    if not logger.isEnabledFor(level):
        return
    payload = {key: sanitize_log_value(value) for key, value in fields.items()}
    if exc is not None:
        payload["error_type"] = type(exc).__name__
        payload["error"] = sanitize_log_value(str(exc))
    try:
        rendered = json.dumps(payload, sort_keys=True, default=str)
    except (TypeError, ValueError):
        rendered = repr(payload)
    logger.log(level, "%s %s", event, rendered)


def setup_rotating_logger(
    name: str,
    log_config: Optional[LogConfig] = None,
    *,
    level: Optional[str] = None,
) -> logging.Logger:
    """Configure `name` with a stderr handler and, when configured, a rotating file."""

    logger = logging.getLogger(name)
    resolved_level = (level or (log_config.level if log_config else "INFO")).upper()
    logger.setLevel(getattr(logging, resolved_level, logging.INFO))
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(_FORMAT)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_config is not None and log_config.path is not None:
        log_config.path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_config.path,
            maxBytes=log_config.max_bytes,
            backupCount=log_config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


def silence_logger(name: str) -> logging.Logger:
    """Return a logger that drops everything; used as the backend's log sink."""

    silent = logging.getLogger(name)
    silent.handlers = [logging.NullHandler()]
    silent.propagate = False
    silent.setLevel(logging.CRITICAL + 1)
    return silent
