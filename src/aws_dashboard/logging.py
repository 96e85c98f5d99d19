from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

_JSON_SCALAR_TYPES = (str, int, float, bool)

# Attributes every LogRecord carries; anything else arrived via `extra`.
_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
        "asctime",
    }
)

# Never emitted even if a caller passes them as extra fields.
SENSITIVE_KEYS = frozenset(
    {"access_key_id", "secret_access_key", "session_token", "accessKeyId", "secretAccessKey", "sessionToken"}
)
REDACTED = "***"

# Context fields rendered as key=value by the plain formatter, in this order.
_PLAIN_CONTEXT_KEYS = ("service", "region", "method", "path", "status")


def _is_json_safe(value: object, depth: int = 3) -> bool:
    if isinstance(value, _JSON_SCALAR_TYPES):
        return True
    if depth <= 0:
        return False
    if isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, (str, int, float, bool)) and k is not None:
                return False
            if not _is_json_safe(v, depth - 1):
                return False
        return True
    if isinstance(value, (list, tuple)):
        return all(_is_json_safe(v, depth - 1) for v in value)
    return False


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """Extra fields attached to a record, with credentials masked."""
    extras: Dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RECORD_ATTRS or key.startswith("_") or value is None:
            continue
        if key in SENSITIVE_KEYS:
            extras[key] = REDACTED
            continue
        if _is_json_safe(value):
            extras[key] = value
    return extras


@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    json_logs: bool = False
    log_file: Optional[Path] = None


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds")
            + "Z",
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in record_extras(record).items():
            payload.setdefault(key, value)
        return json.dumps(payload, sort_keys=True)


class PlainFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="seconds") + "Z"
        step = getattr(record, "step", None)
        phase = getattr(record, "phase", None)
        duration_ms = getattr(record, "duration_ms", None)
        message = record.getMessage()
        if step or phase:
            message = f"[{step or 'unknown'}:{phase or 'unknown'}] {message}"
        context = [
            f"{key}={getattr(record, key)}"
            for key in _PLAIN_CONTEXT_KEYS
            if getattr(record, key, None) not in (None, "")
        ]
        error = getattr(record, "error", None)
        if error:
            context.append(f"error={error}")
        if context:
            message = f"{message} {' '.join(context)}"
        if duration_ms is not None:
            message = f"{message} (duration_ms={duration_ms})"
        line = f"{timestamp} {record.levelname} {record.name}: {message}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _level_from_str(level: str) -> int:
    value = getattr(logging, (level or "").upper(), None)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(config: Optional[LogConfig] = None) -> None:
    """
    Configure root logger once. Subsequent calls are no-ops.
    Env overrides:
      - AWS_DASH_LOG_LEVEL (default INFO)
      - AWS_DASH_JSON_LOGS (1/true to enable)
    """
    if getattr(setup_logging, "_configured", False):
        return

    env_level = os.getenv("AWS_DASH_LOG_LEVEL")
    env_json = os.getenv("AWS_DASH_JSON_LOGS")

    level = _level_from_str((config.level if config else None) or env_level or "INFO")
    json_logs = (config.json_logs if config else False) or (
        (env_json or "").lower() in ("1", "true", "yes")
    )

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter() if json_logs else PlainFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    # Avoid duplicate handlers if running under certain test runners
    root.handlers = [handler]

    # Requests are logged by the app middleware; uvicorn's access log would duplicate them.
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.WARNING))
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    if config is not None and config.log_file is not None:
        add_log_file(config.log_file)

    setattr(setup_logging, "_configured", True)


def add_log_file(log_path: Path) -> None:
    """
    Attach a file handler alongside stdout without replacing existing handlers.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_path):
            return

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(root.level)
    formatter = root.handlers[0].formatter if root.handlers else None
    handler.setFormatter(formatter or PlainFormatter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
