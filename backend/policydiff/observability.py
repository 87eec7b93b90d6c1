from __future__ import annotations

from contextvars import ContextVar, Token
from datetime import datetime, timezone
import json
import logging
import re
from typing import Any, Mapping
from uuid import uuid4


# Fields bound here (request_id, task_id) are stamped onto every log line.
LOG_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar("log_context", default={})
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_HANDLER_MARKER = "_policydiff_handler"

# Exact key names plus fragments; keys are compared lower-case with "-" as "_".
_SENSITIVE_KEYS = frozenset({"authorization", "cookie", "set_cookie", "id_card", "phone", "mobile", "email"})
_SENSITIVE_FRAGMENTS = ("password", "secret", "token", "api_key", "apikey", "appkey", "access_key")

# Ordered: bearer headers before bare Coze tokens, ID numbers before mobiles
# since an 18 digit ID contains 11 digit runs that look like a mobile number.
_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*"), "Bearer [REDACTED]"),
    (re.compile(r"\b(?:pat|sat)_[A-Za-z0-9]{16,}\b"), "[REDACTED_COZE_TOKEN]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[REDACTED_EMAIL]"),
    (re.compile(r"(?<!\d)\d{17}[\dXx](?!\d)"), "[REDACTED_ID]"),
    (re.compile(r"(?<!\d)(?:\+?86[-\s]?)?1[3-9]\d{9}(?!\d)"), "[REDACTED_PHONE]"),
)

# Attributes every LogRecord carries; anything else came in through `extra`.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}

# Library loggers that would echo full request URLs at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3")


def normalize_request_id(candidate: str | None) -> str:
    trimmed = (candidate or "").strip()
    return trimmed if REQUEST_ID_PATTERN.fullmatch(trimmed) else str(uuid4())


def bind_log_context(**fields: str) -> Token[Mapping[str, str]]:
    """Add ``fields`` to the log context until the returned token is reset."""
    return LOG_CONTEXT.set({**LOG_CONTEXT.get(), **fields})


def reset_log_context(token: Token[Mapping[str, str]]) -> None:
    LOG_CONTEXT.reset(token)


def _is_sensitive_key(key: str) -> bool:
    normalized = key.strip().lower().replace("-", "_")
    return normalized in _SENSITIVE_KEYS or any(fragment in normalized for fragment in _SENSITIVE_FRAGMENTS)


def _redact_text(value: str, max_length: int) -> str:
    for pattern, replacement in _REDACTIONS:
        value = pattern.sub(replacement, value)
    if len(value) > max_length:
        return f"{value[:max_length]}...[truncated]"
    return value


def sanitize_for_logging(value: Any, *, max_string_length: int = 240) -> Any:
    if isinstance(value, Mapping):
        return {
            str(key): "[REDACTED]"
            if _is_sensitive_key(str(key))
            else sanitize_for_logging(item, max_string_length=max_string_length)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize_for_logging(item, max_string_length=max_string_length) for item in value]
    if isinstance(value, bytes):
        return f"[{len(value)} bytes]"
    if isinstance(value, str):
        return _redact_text(value, max_string_length)
    return value


class JsonFormatter(logging.Formatter):
    """One JSON object per line; Chinese text (branch names, reports) stays readable."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": "-",
            **LOG_CONTEXT.get(),
        }
        payload.update(
            (key, sanitize_for_logging(value))
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level_name: str) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if any(getattr(handler, _HANDLER_MARKER, False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    setattr(handler, _HANDLER_MARKER, True)
    root.addHandler(handler)
