from __future__ import annotations

import httpx

from ..config import settings
from .http import HttpProviderClient
from .openai_chat import OpenAIChatClient


class DeepSeekClient(OpenAIChatClient):
    """
    DeepSeek Chat speaks the Chat Completions wire format.

    Family differences (16 stop sequences, reasoning_content deltas from
    deepseek-reasoner, no sampling for the reasoner) live in the capability table.
    """

    name = "deepseek"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        HttpProviderClient.__init__(
            self,
            api_key=api_key if api_key is not None else settings.DEEPSEEK_API_KEY,
            base_url=base_url or settings.DEEPSEEK_BASE_URL,
            timeout=timeout,
            transport=transport,
        )
