"""Minimal text/event-stream reader for provider responses."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict

import httpx

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """
    Yield the payload of each `data:` field, joining multi-line events.

    Comments (`: ping`), `event:`/`id:` fields and blank heartbeat events are skipped.
    """
    buffer: list[str] = []
    async for line in response.aiter_lines():
        if line == "":
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name != "data":
            continue
        buffer.append(value[1:] if value.startswith(" ") else value)
    if buffer:
        yield "\n".join(buffer)


async def iter_sse_json(response: httpx.Response) -> AsyncIterator[Dict[str, Any] | str]:
    """Decode SSE payloads as JSON; the terminal sentinel is passed through as a string."""
    async for data in iter_sse_data(response):
        if data.strip() == DONE_SENTINEL:
            yield DONE_SENTINEL
            return
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed stream chunk", extra={"chunk_bytes": len(data)})
            continue
        if isinstance(chunk, dict):
            yield chunk
