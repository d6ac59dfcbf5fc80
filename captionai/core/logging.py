"""
Structured logging for the caption service.

- One `captionai` logger tree; JSON lines in production, single-line pretty
  output elsewhere.
- Every record carries the current request_id (set by RequestIdMiddleware).
- `extra=` fields are rendered, with secrets dropped and identities masked
  unless LOG_IDENTITIES is on.
"""

import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "captionai"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Built-in LogRecord attributes; anything else arrived through `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "request_id"}
_SECRET_KEY = re.compile(r"(secret|api_key|password|token|signature|authorization)", re.IGNORECASE)
_IDENTITY_KEYS = frozenset({"identity", "email"})
_MAX_FIELD_CHARS = 500

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def mask_identity(identity: Any) -> Any:
    """'alice@example.com' -> 'a***@example.com'. Non-emails pass through."""
    if not isinstance(identity, str) or "@" not in identity:
        return identity
    local, _, domain = identity.rpartition("@")
    return f"{local[:1]}***@{domain}"


def _truncate(value: Any, limit: int = _MAX_FIELD_CHARS) -> Any:
    if isinstance(value, (bool, int, float)) or value is None:
        return value
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= limit else text[:limit] + "...<truncated>"


class RequestIdFilter(logging.Filter):
    """Stamp the context request_id on records that did not bring their own."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class _StructuredFormatter(logging.Formatter):
    def __init__(self, log_identities: bool = False):
        super().__init__()
        self.log_identities = log_identities

    def fields(self, record: logging.LogRecord) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            if _SECRET_KEY.search(key):
                continue
            if key in _IDENTITY_KEYS and not self.log_identities:
                value = mask_identity(value)
            out[key] = _truncate(value)
        return out

    @staticmethod
    def timestamp(record: logging.LogRecord) -> str:
        return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class JsonFormatter(_StructuredFormatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            **self.fields(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(_StructuredFormatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        parts = [self.timestamp(record), record.levelname, f"[{record.name}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{k}={v}" for k, v in self.fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: str = "INFO", log_identities: bool = False) -> None:
    """Install the handler on the `captionai` logger. Safe to call more than once."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())

    formatter = JsonFormatter(log_identities) if env.lower() == "production" else PrettyFormatter(log_identities)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn has its own access log; ours is request.complete
    logging.getLogger("uvicorn.access").propagate = False


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    identity: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Emit one structured event on the `captionai` logger."""
    fields: Dict[str, Any] = {"request_id": request_id or get_request_id()}
    if identity:
        fields["identity"] = identity
    if event_type:
        fields["event_type"] = event_type
    if error_code:
        fields["error_code"] = error_code
    if extra:
        fields.update(extra)
    logging.getLogger(LOGGER_NAME).log(logging.getLevelName(level.upper()), msg, extra=fields)
