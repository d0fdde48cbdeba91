from __future__ import annotations

import asyncio
from typing import AsyncIterator

from .base import ContentDelta, ProviderEvent, ProviderRequest, ProviderResult, UsageFinal


def _estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4) if text else 0


class MockProviderClient:
    """Offline client for local development: echoes the last user turn word by word."""

    name = "mock"
    is_mock = True

    def __init__(self, delay_s: float = 0.02) -> None:
        self.delay_s = delay_s

    @staticmethod
    def _reply_for(request: ProviderRequest) -> str:
        last_user = request.user_text
        if not last_user:
            for message in reversed(request.messages):
                if message.get("role") == "user":
                    last_user = message.get("content") or ""
                    break
        return f"[mock:{request.model}] You said: {last_user}"

    @staticmethod
    def _prompt_tokens(request: ProviderRequest) -> int:
        return sum(_estimate_tokens(m.get("content") or "") for m in request.messages) or _estimate_tokens(
            request.user_text
        )

    async def complete(self, request: ProviderRequest) -> ProviderResult:
        reply = self._reply_for(request)
        return ProviderResult(reply, self._prompt_tokens(request), _estimate_tokens(reply))

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
        reply = self._reply_for(request)
        words = reply.split(" ")
        for index, word in enumerate(words):
            await asyncio.sleep(self.delay_s)
            yield ContentDelta(word if index == 0 else f" {word}")
        yield UsageFinal(self._prompt_tokens(request), _estimate_tokens(reply))

    async def delete_thread(self, thread_id: str) -> bool:
        return True
