from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

from ..config import settings
from ..models import MessageRole
from .assistant_config import AssistantConfig

HistoryItem = Tuple[str, str]  # (role, content)
_HISTORY_ROLES = {MessageRole.USER.value, MessageRole.ASSISTANT.value}


def system_prompt_for(config: AssistantConfig) -> str:
    prompt = config.system_prompt or ""
    if config.filter_unsafe_content and settings.SAFETY_CLAUSE:
        prompt = f"{prompt}\n\n{settings.SAFETY_CLAUSE}" if prompt else settings.SAFETY_CLAUSE
    return prompt


def build_context(history: Sequence[HistoryItem], new_user_text: str, config: AssistantConfig) -> List[Dict[str, str]]:
    """
    Assemble the outgoing message list.

    Exactly one system message first, then the last `context_window` prior
    user/assistant messages oldest first, then the new user turn. `history`
    must be chronological and must not contain the new turn.
    """
    messages: List[Dict[str, str]] = [{"role": MessageRole.SYSTEM.value, "content": system_prompt_for(config)}]
    prior = [(role, content) for role, content in history if role in _HISTORY_ROLES and content]
    window = config.context_window
    if window > 0:
        for role, content in prior[-window:]:
            messages.append({"role": role, "content": content})
    messages.append({"role": MessageRole.USER.value, "content": new_user_text})
    return messages
