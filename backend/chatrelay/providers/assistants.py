# SPDX-License-Identifier: Apache-2.0
"""
Knowledge-base mode over the Assistants v2 thread/run API.

One turn is: ensure a thread exists, add the user message, start a run,
poll it to a terminal status within a fixed number of attempts, then read
the newest assistant message. The run's usage becomes the turn's usage.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from ..config import settings
from ..errors import (
    ConfigurationError,
    ProviderFailure,
    ProviderRejected,
    ProviderTimeout,
    StaleUpstreamThread,
    redact_provider_error,
)
from ..telemetry import log_json
from .base import (
    ContentDelta,
    ProviderError,
    ProviderEvent,
    ProviderRequest,
    ProviderResult,
    ThreadBound,
    UsageFinal,
)
from .http import HttpProviderClient, extract_error_message, read_retry

RUN_TERMINAL_OK = "completed"
RUN_TERMINAL_FAILED = {"failed", "expired", "cancelled", "incomplete"}
RUN_PENDING = {"queued", "in_progress", "cancelling", "requires_action"}


def _is_stale_thread(response: httpx.Response) -> bool:
    if response.status_code == 404:
        return True
    if response.status_code == 400:
        message = (extract_error_message(response) or "").lower()
        return "thread" in message and ("no thread" in message or "not found" in message or "invalid" in message)
    return False


def build_run_payload(request: ProviderRequest) -> Dict[str, Any]:
    """Run body: instructions and limits, plus file search over the assistant's vector store."""
    caps = request.capabilities
    payload: Dict[str, Any] = {"assistant_id": request.upstream_assistant_id}
    if request.model:
        payload["model"] = request.model
    if request.instructions:
        payload["instructions"] = request.instructions
    if request.max_tokens:
        payload["max_completion_tokens"] = int(request.max_tokens)
    if caps.supports_sampling:
        payload["temperature"] = caps.clamp_temperature(request.temperature)
        if request.top_p is not None and float(request.top_p) != 1.0:
            payload["top_p"] = float(request.top_p)
    if caps.supports_response_format and request.response_format == "json_object":
        payload["response_format"] = {"type": "json_object"}
    if request.vector_store_id:
        payload["tools"] = [{"type": "file_search"}]
        payload["tool_resources"] = {"file_search": {"vector_store_ids": [request.vector_store_id]}}
    elif caps.supports_reasoning_effort and request.reasoning_effort:
        # Reasoning effort is never combined with file search.
        payload["reasoning_effort"] = request.reasoning_effort
    return payload


def newest_assistant_text(messages: Dict[str, Any]) -> str:
    for message in messages.get("data") or []:
        if message.get("role") != "assistant":
            continue
        parts = []
        for part in message.get("content") or []:
            if part.get("type") == "text":
                value = (part.get("text") or {}).get("value")
                if value:
                    parts.append(value)
        return "".join(parts)
    return ""


class AssistantsClient(HttpProviderClient):
    name = "openai_assistants"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        poll_attempts: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        super().__init__(
            api_key=api_key if api_key is not None else settings.OPENAI_API_KEY,
            base_url=base_url or settings.OPENAI_BASE_URL,
            timeout=timeout,
            transport=transport,
            extra_headers={"OpenAI-Beta": "assistants=v2"},
        )
        self.poll_attempts = poll_attempts or settings.KB_POLL_MAX_ATTEMPTS
        self.poll_interval = settings.KB_POLL_INTERVAL_S if poll_interval is None else poll_interval

    # ----- upstream calls ---------------------------------------------------------

    async def _create_thread(self, client: httpx.AsyncClient) -> str:
        started = time.perf_counter()
        response = await client.post("/threads", json={})
        if response.status_code >= 400:
            self._record("thread_create", "error", started)
            raise self._failure_for(response)
        self._record("thread_create", "ok", started)
        return response.json()["id"]

    async def _add_message(self, client: httpx.AsyncClient, thread_id: str, text: str) -> None:
        started = time.perf_counter()
        response = await client.post(f"/threads/{thread_id}/messages", json={"role": "user", "content": text})
        if response.status_code >= 400:
            self._record("message_create", "error", started)
            if _is_stale_thread(response):
                raise StaleUpstreamThread(thread_id, extract_error_message(response), status=response.status_code)
            raise self._failure_for(response)
        self._record("message_create", "ok", started)

    async def _create_run(self, client: httpx.AsyncClient, thread_id: str, request: ProviderRequest) -> str:
        started = time.perf_counter()
        response = await client.post(f"/threads/{thread_id}/runs", json=build_run_payload(request))
        if response.status_code >= 400:
            self._record("run_create", "error", started)
            if _is_stale_thread(response):
                raise StaleUpstreamThread(thread_id, extract_error_message(response), status=response.status_code)
            raise self._failure_for(response)
        self._record("run_create", "ok", started)
        return response.json()["id"]

    @read_retry()
    async def _get_run(self, client: httpx.AsyncClient, thread_id: str, run_id: str) -> Dict[str, Any]:
        response = await client.get(f"/threads/{thread_id}/runs/{run_id}")
        response.raise_for_status()
        return response.json()

    @read_retry()
    async def _list_messages(self, client: httpx.AsyncClient, thread_id: str, run_id: str) -> Dict[str, Any]:
        response = await client.get(
            f"/threads/{thread_id}/messages",
            params={"order": "desc", "limit": 1, "run_id": run_id},
        )
        response.raise_for_status()
        return response.json()

    async def _cancel_run_quietly(self, client: httpx.AsyncClient, thread_id: str, run_id: str) -> None:
        try:
            await client.post(f"/threads/{thread_id}/runs/{run_id}/cancel")
        except httpx.HTTPError as exc:
            log_json(30, "kb_run_cancel_failed", run_id=run_id, **redact_provider_error(exc))

    async def _poll_run(self, client: httpx.AsyncClient, thread_id: str, run_id: str) -> Dict[str, Any]:
        started = time.perf_counter()
        for attempt in range(1, self.poll_attempts + 1):
            try:
                run = await self._get_run(client, thread_id, run_id)
            except httpx.HTTPStatusError as exc:
                self._record("run_poll", "error", started)
                if _is_stale_thread(exc.response):
                    raise StaleUpstreamThread(
                        thread_id, extract_error_message(exc.response), status=exc.response.status_code
                    ) from exc
                raise self._failure_for(exc.response) from exc
            except httpx.TimeoutException as exc:
                self._record("run_poll", "timeout", started)
                raise ProviderTimeout(str(exc)) from exc
            status = run.get("status")
            if status == RUN_TERMINAL_OK:
                self._record("run_poll", "ok", started)
                return run
            if status in RUN_TERMINAL_FAILED:
                self._record("run_poll", status, started)
                last_error = run.get("last_error") or {}
                raise ProviderRejected(
                    last_error.get("message") or f"run {status}",
                    upstream_code=last_error.get("code") or status,
                )
            if attempt < self.poll_attempts:
                await asyncio.sleep(self.poll_interval)

        self._record("run_poll", "timeout", started)
        log_json(30, "kb_run_poll_exhausted", run_id=run_id, attempts=self.poll_attempts)
        await self._cancel_run_quietly(client, thread_id, run_id)
        raise ProviderTimeout(f"run still pending after {self.poll_attempts} polls")

    # ----- public contract -----------------------------------------------------------

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        if not request.upstream_assistant_id:
            yield ProviderError.from_exception(ConfigurationError("knowledge base has no upstream assistant id"))
            return

        thread_id: Optional[str] = request.thread_id
        run_id: Optional[str] = None
        async with self._http() as client:
            try:
                if not thread_id:
                    thread_id = await self._create_thread(client)
                    yield ThreadBound(thread_id)
                await self._add_message(client, thread_id, request.user_text)
                run_id = await self._create_run(client, thread_id, request)
                run = await self._poll_run(client, thread_id, run_id)
                messages = await self._list_messages(client, thread_id, run_id)
            except asyncio.CancelledError:
                if thread_id and run_id:
                    await self._cancel_run_quietly(client, thread_id, run_id)
                raise
            except ProviderFailure as exc:
                log_json(40, "kb_turn_failed", thread_id=thread_id, run_id=run_id, **redact_provider_error(exc))
                yield ProviderError.from_exception(exc)
                return
            except httpx.TimeoutException as exc:
                log_json(40, "kb_turn_timeout", thread_id=thread_id, run_id=run_id, **redact_provider_error(exc))
                yield ProviderError("timeout", str(exc))
                return
            except httpx.HTTPError as exc:
                log_json(40, "kb_turn_error", thread_id=thread_id, run_id=run_id, **redact_provider_error(exc))
                yield ProviderError("rejected", str(exc))
                return

        text = newest_assistant_text(messages)
        if text:
            yield ContentDelta(text)
        usage = run.get("usage") or {}
        if not usage:
            log_json(30, "provider_usage_missing", provider=self.name, model=request.model)
        yield UsageFinal(
            int(usage.get("prompt_tokens") or 0),
            int(usage.get("completion_tokens") or 0),
            reported=bool(usage),
        )

    async def complete(self, request: ProviderRequest) -> ProviderResult:
        content: list[str] = []
        thread_id = request.thread_id
        async for event in self.stream(request):
            if isinstance(event, ThreadBound):
                thread_id = event.thread_id
            elif isinstance(event, ContentDelta):
                content.append(event.text)
            elif isinstance(event, ProviderError):
                raise event.to_exception()
            elif isinstance(event, UsageFinal):
                return ProviderResult("".join(content), event.input_tokens, event.output_tokens, thread_id=thread_id)
        raise ProviderRejected("run ended without usage")

    async def delete_thread(self, thread_id: str) -> bool:
        """Release an upstream thread; an already-missing thread counts as released."""
        started = time.perf_counter()
        async with self._http() as client:
            try:
                response = await client.delete(f"/threads/{thread_id}")
            except httpx.HTTPError as exc:
                self._record("thread_delete", "error", started)
                log_json(30, "kb_thread_delete_failed", thread_id=thread_id, **redact_provider_error(exc))
                return False
        if response.status_code == 404 or response.status_code < 400:
            self._record("thread_delete", "ok", started)
            return True
        self._record("thread_delete", "error", started)
        log_json(30, "kb_thread_delete_failed", thread_id=thread_id, status_code=response.status_code)
        return False
