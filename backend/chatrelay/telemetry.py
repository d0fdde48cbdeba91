import datetime
import json
import logging
import sys
import traceback
from contextvars import ContextVar
from typing import Dict, Optional

# Per-request context injected by middleware/dependencies
_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_user_id_ctx: ContextVar[Optional[int]] = ContextVar("user_id", default=None)
# Per-turn context; copied into the relay task when it is created
_turn_id_ctx: ContextVar[Optional[str]] = ContextVar("turn_id", default=None)

_RESERVED_RECORD_KEYS = frozenset(
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
    }
)
_SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "x-api-key",
        "proxy-authorization",
        "set-cookie",
        "openai-organization",
    }
)


def _bind_context(payload: dict) -> None:
    rid = _request_id_ctx.get()
    if rid:
        payload.setdefault("request_id", rid)
    uid = _user_id_ctx.get()
    if uid is not None:
        payload.setdefault("user_id", uid)
    tid = _turn_id_ctx.get()
    if tid:
        payload.setdefault("turn_id", tid)


class JsonFormatter(logging.Formatter):
    """JSON formatter that keeps structured fields plus request/turn context."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {}
        if isinstance(record.msg, dict):
            payload.update(record.msg)
            payload.setdefault("message", record.msg.get("msg") or record.msg.get("event"))
        else:
            payload["message"] = record.getMessage()

        payload.setdefault("timestamp", datetime.datetime.now(datetime.timezone.utc).isoformat())
        payload.setdefault("level", record.levelname)
        payload.setdefault("logger", record.name)

        rid = getattr(record, "request_id", None)
        if rid:
            payload.setdefault("request_id", rid)
        _bind_context(payload)
        payload.pop("msg", None)

        context_fields = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RESERVED_RECORD_KEYS and k not in payload and not k.startswith("_")
        }
        if context_fields:
            payload.setdefault("context", _scrub_header_fields(context_fields))

        payload = _scrub_header_fields(payload)

        if record.exc_info:
            payload["stack"] = "".join(traceback.format_exception(*record.exc_info))
        if record.stack_info:
            payload.setdefault("stack", record.stack_info)

        return json.dumps(payload, default=str)


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure root logger to emit JSON structured logs."""
    root = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    if not root.handlers:
        root.addHandler(handler)
    else:
        for h in root.handlers:
            h.setFormatter(JsonFormatter())
    root.setLevel(level)
    # httpx logs full request lines at INFO; provider URLs are noise at that level.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return root


def _reset(var: ContextVar, token: object | None) -> None:
    try:
        if token is not None:
            var.reset(token)  # type: ignore[arg-type]
        else:
            var.set(None)
    except ValueError:
        # Token created in another context (e.g. relay task); just clear.
        var.set(None)


def bind_request_context(request_id: Optional[str]) -> object:
    """Bind the current request_id into a contextvar (returns reset token)."""
    return _request_id_ctx.set(request_id)


def clear_request_context(token: object | None = None) -> None:
    _reset(_request_id_ctx, token)


def bind_user_context(user_id: Optional[int]) -> object:
    """Bind the current user_id into a contextvar (returns reset token)."""
    return _user_id_ctx.set(user_id)


def clear_user_context(token: object | None = None) -> None:
    _reset(_user_id_ctx, token)


def bind_turn_context(turn_id: Optional[str]) -> object:
    return _turn_id_ctx.set(turn_id)


def clear_turn_context(token: object | None = None) -> None:
    _reset(_turn_id_ctx, token)


def current_request_id() -> Optional[str]:
    return _request_id_ctx.get()


def scrub_sensitive_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """
    Scrub sensitive headers from request headers for safe logging.
    Replaces values of sensitive headers with [REDACTED].
    """

    def _is_secretish(header: str) -> bool:
        h = header.lower()
        if h in _SENSITIVE_HEADERS:
            return True
        return any(h.endswith(suffix) for suffix in ("-token", "-secret", "-key"))

    return {k: ("[REDACTED]" if _is_secretish(k) else v) for k, v in headers.items()}


def _scrub_header_fields(payload: Dict[str, object]) -> Dict[str, object]:
    header_keys = {"headers", "request_headers", "response_headers"}
    cleaned: Dict[str, object] = {}
    for key, value in payload.items():
        if isinstance(key, str) and key.lower() in header_keys and isinstance(value, dict):
            cleaned[key] = scrub_sensitive_headers(value)
        else:
            cleaned[key] = value
    return cleaned


def log_json(level: int, msg: str, **fields):
    payload = {"event": msg, **fields}
    payload = _scrub_header_fields(payload)
    _bind_context(payload)
    logging.getLogger("chatrelay").log(level, payload)
