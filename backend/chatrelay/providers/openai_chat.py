# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import time
from typing import Any, AsyncIterator, Dict

import httpx

from ..config import settings
from ..errors import ProviderRejected, ProviderTimeout, redact_provider_error
from ..telemetry import log_json
from .base import (
    ContentDelta,
    ProviderError,
    ProviderEvent,
    ProviderRequest,
    ProviderResult,
    ReasoningDelta,
    UsageFinal,
    complete_as_events,
)
from .http import HttpProviderClient
from .sse import DONE_SENTINEL, iter_sse_json


def build_chat_payload(request: ProviderRequest, *, stream: bool) -> Dict[str, Any]:
    """
    Translate a request into a Chat Completions body.

    Sampling parameters are sent only when the model family accepts them and
    they differ from the API defaults; reasoning families never see them.
    """
    caps = request.capabilities
    payload: Dict[str, Any] = {
        "model": request.model,
        "messages": request.messages,
        caps.token_param: int(request.max_tokens),
    }
    if caps.supports_sampling:
        payload["temperature"] = caps.clamp_temperature(request.temperature)
        if request.top_p is not None and float(request.top_p) != 1.0:
            payload["top_p"] = float(request.top_p)
        if request.frequency_penalty:
            payload["frequency_penalty"] = float(request.frequency_penalty)
        if request.presence_penalty:
            payload["presence_penalty"] = float(request.presence_penalty)
    if caps.supports_response_format and request.response_format == "json_object":
        payload["response_format"] = {"type": "json_object"}
    if request.stop:
        payload["stop"] = request.stop[: caps.max_stop_sequences]
    if request.seed is not None:
        payload["seed"] = int(request.seed)
    if request.user:
        payload["user"] = request.user
    if caps.supports_reasoning_effort and request.reasoning_effort:
        payload["reasoning_effort"] = request.reasoning_effort
    if stream:
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
    return payload


def _usage_pair(usage: Dict[str, Any] | None) -> tuple[int, int]:
    usage = usage or {}
    return int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)


class OpenAIChatClient(HttpProviderClient):
    """Chat Completions over HTTPS; also serves OpenAI-compatible backends."""

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            api_key=api_key if api_key is not None else settings.OPENAI_API_KEY,
            base_url=base_url or settings.OPENAI_BASE_URL,
            timeout=timeout,
            transport=transport,
        )

    async def complete(self, request: ProviderRequest) -> ProviderResult:
        payload = build_chat_payload(request, stream=False)
        started = time.perf_counter()
        try:
            async with self._http() as client:
                response = await client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as exc:
            self._record("complete", "timeout", started)
            raise ProviderTimeout(str(exc)) from exc
        except httpx.HTTPError as exc:
            self._record("complete", "error", started)
            raise ProviderRejected(str(exc)) from exc

        if response.status_code >= 400:
            self._record("complete", "error", started)
            raise self._failure_for(response)
        self._record("complete", "ok", started)

        body = response.json()
        choices = body.get("choices") or []
        message = (choices[0].get("message") if choices else None) or {}
        input_tokens, output_tokens = _usage_pair(body.get("usage"))
        return ProviderResult(
            content=message.get("content") or "",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            raw={"id": body.get("id"), "finish_reason": choices[0].get("finish_reason") if choices else None},
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        if not request.capabilities.supports_streaming:
            async for event in complete_as_events(self, request):
                yield event
            return

        payload = build_chat_payload(request, stream=True)
        started = time.perf_counter()
        usage: Dict[str, Any] | None = None
        finished = False
        try:
            async with self._http() as client:
                async with client.stream("POST", "/chat/completions", json=payload) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        self._record("stream", "error", started)
                        failure = self._failure_for(response)
                        log_json(40, "provider_stream_rejected", provider=self.name, **redact_provider_error(failure))
                        yield ProviderError.from_exception(failure)
                        return
                    async for chunk in iter_sse_json(response):
                        if chunk == DONE_SENTINEL:
                            finished = True
                            break
                        if chunk.get("usage"):
                            usage = chunk["usage"]
                        for choice in chunk.get("choices") or []:
                            delta = choice.get("delta") or {}
                            reasoning = delta.get("reasoning_content")
                            if reasoning:
                                yield ReasoningDelta(reasoning)
                            text = delta.get("content")
                            if text:
                                yield ContentDelta(text)
        except httpx.TimeoutException as exc:
            self._record("stream", "timeout", started)
            log_json(40, "provider_stream_timeout", provider=self.name, **redact_provider_error(exc))
            yield ProviderError("timeout", str(exc))
            return
        except httpx.HTTPError as exc:
            self._record("stream", "error", started)
            log_json(40, "provider_stream_error", provider=self.name, **redact_provider_error(exc))
            yield ProviderError("rejected", str(exc))
            return

        if not finished:
            # No terminal frame; the relay decides how to close the turn.
            self._record("stream", "truncated", started)
            return

        self._record("stream", "ok", started)
        if usage is None:
            log_json(30, "provider_usage_missing", provider=self.name, model=request.model)
            yield UsageFinal(0, 0, reported=False)
            return
        input_tokens, output_tokens = _usage_pair(usage)
        yield UsageFinal(input_tokens, output_tokens)
