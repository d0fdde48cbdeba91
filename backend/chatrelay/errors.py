"""Error taxonomy for the relay and its provider clients."""

from __future__ import annotations

from typing import Any, Dict

from .config import settings

# User-facing text per failure kind; upstream detail never reaches the client by default.
SAFE_MESSAGES: Dict[str, str] = {
    "timeout": "The assistant took too long to respond. Please try again.",
    "rejected": "The assistant could not complete this request. Please try again.",
    "stale_thread": "The conversation context was reset. Please send your message again.",
    "configuration": "This assistant is temporarily unavailable.",
    "empty_response": "The assistant returned an empty response. Please try again.",
    "unexpected_end": "The response stream ended unexpectedly. Please try again.",
    "internal": "An error occurred processing your request. Please try again.",
}


class ChatRelayError(Exception):
    """Base error carrying a stable code, a user-safe message and an HTTP status."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str | None = None, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message or SAFE_MESSAGES.get(self.code, SAFE_MESSAGES["internal"]))
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    @property
    def message(self) -> str:
        return str(self)


class QuotaExceeded(ChatRelayError):
    code = "tokens_exhausted"
    status_code = 402

    def __init__(self, balance: int | None = None, threshold: int | None = None):
        super().__init__("You have run out of tokens. Upgrade your plan to keep chatting.")
        self.balance = balance
        self.threshold = threshold


class TurnInProgress(ChatRelayError):
    code = "turn_in_progress"
    status_code = 409

    def __init__(self, conversation_id: int):
        super().__init__("A reply is already being generated for this conversation.")
        self.conversation_id = conversation_id


class ProviderFailure(ChatRelayError):
    """A provider-level failure; `kind` selects the user-safe message."""

    kind = "rejected"
    code = "provider_error"
    status_code = 502

    def __init__(self, detail: str | None = None, *, status: int | None = None, upstream_code: str | None = None):
        super().__init__(SAFE_MESSAGES.get(self.kind, SAFE_MESSAGES["internal"]))
        self.detail = detail
        self.upstream_status = status
        self.upstream_code = upstream_code


class ProviderTimeout(ProviderFailure):
    kind = "timeout"
    code = "provider_timeout"
    status_code = 504


class ProviderRejected(ProviderFailure):
    kind = "rejected"
    code = "provider_rejected"
    status_code = 502


class StaleUpstreamThread(ProviderFailure):
    kind = "stale_thread"
    code = "stale_thread"
    status_code = 502

    def __init__(self, thread_id: str | None, detail: str | None = None, *, status: int | None = None):
        super().__init__(detail, status=status)
        self.thread_id = thread_id


class ConfigurationError(ProviderFailure):
    kind = "configuration"
    code = "configuration_error"
    status_code = 500


FAILURE_BY_KIND = {
    cls.kind: cls for cls in (ProviderTimeout, ProviderRejected, StaleUpstreamThread, ConfigurationError)
}


def safe_message(kind: str, detail: str | None = None) -> str:
    """Message sent to the caller for a failure kind; upstream detail only under DEBUG_ERRORS."""
    base = SAFE_MESSAGES.get(kind, SAFE_MESSAGES["internal"])
    if settings.DEBUG_ERRORS and detail:
        return f"{base} ({detail})"
    return base


def redact_provider_error(exc: BaseException | None) -> Dict[str, Any]:
    """
    Return a scrubbed view of an upstream error that omits prompts and response bodies.
    """
    if exc is None:
        return {}
    response = getattr(exc, "response", None)
    status_code = getattr(exc, "upstream_status", None)
    if status_code is None and response is not None:
        status_code = getattr(response, "status_code", None)
    detail = getattr(exc, "detail", None) if settings.DEBUG_ERRORS else "[REDACTED]"
    return {
        "error_type": type(exc).__name__,
        "error_code": getattr(exc, "upstream_code", None) or getattr(exc, "code", None),
        "status_code": status_code,
        "detail": detail,
    }
