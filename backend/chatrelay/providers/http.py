# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception

from ..config import settings
from ..errors import ConfigurationError, ProviderRejected, ProviderTimeout
from ..metrics import provider_calls_total, provider_latency

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503}
TIMEOUT_STATUS = {408, 504}


def _is_rate_limit_error(exc: BaseException | None) -> bool:
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429


def _is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    return False


def _wait_strategy(retry_state: Any) -> float:
    exc = retry_state.outcome.exception()
    if _is_rate_limit_error(exc):
        return wait_exponential(multiplier=2, min=4, max=30)(retry_state)
    return wait_exponential(multiplier=0.5, min=0.5, max=8)(retry_state)


def _before_sleep_log(retry_state: Any) -> None:
    exc = retry_state.outcome.exception()
    logger.warning(
        "Retrying provider read",
        extra={
            "attempt": retry_state.attempt_number,
            "is_rate_limit": _is_rate_limit_error(exc),
            "error_type": type(exc).__name__ if exc else None,
        },
    )


def read_retry() -> Any:
    """
    Retry decorator for idempotent provider reads (run status, message fetch).

    Writes (completions, run creation) are never retried: a retried write can bill twice.
    """
    return retry(
        stop=stop_after_attempt(settings.PROVIDER_RETRY_ATTEMPTS),
        wait=_wait_strategy,
        retry=retry_if_exception(_is_retryable_error),
        reraise=True,
        before_sleep=_before_sleep_log,
    )


def extract_error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return err.get("message") or err.get("code")
        if isinstance(err, str):
            return err
        return body.get("message")
    return None


def extract_error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict):
        code = err.get("code") or err.get("type")
        return str(code) if code else None
    return None


class HttpProviderClient:
    """Shared plumbing for providers spoken to over HTTPS with bearer-token auth."""

    name = "http"

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError(f"{self.name} API key is not configured")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout if timeout is not None else settings.PROVIDER_HTTP_TIMEOUT_S
        self._transport = transport
        self._extra_headers = dict(extra_headers or {})

    def _http(self) -> httpx.AsyncClient:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            **self._extra_headers,
        }
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(self._timeout, connect=10.0),
            transport=self._transport,
        )

    def _record(self, operation: str, status: str, started: float) -> None:
        provider_calls_total.labels(provider=self.name, operation=operation, status=status).inc()
        provider_latency.labels(provider=self.name, operation=operation).observe(time.perf_counter() - started)

    def _failure_for(self, response: httpx.Response) -> ProviderRejected | ProviderTimeout:
        detail = extract_error_message(response) or f"HTTP {response.status_code}"
        code = extract_error_code(response)
        if response.status_code in TIMEOUT_STATUS:
            return ProviderTimeout(detail, status=response.status_code, upstream_code=code)
        return ProviderRejected(detail, status=response.status_code, upstream_code=code)
