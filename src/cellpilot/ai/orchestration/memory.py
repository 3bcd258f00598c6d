"""Rolling conversation memory produced by summarizing older messages."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

from ...state.models import ChatMessage, MemoryState
from ..prompts import COMPACTION_SYSTEM_PROMPT, build_compaction_prompt
from ..providers.base import ProviderAdapter
from ..types import FinalResponse, LlmMessage, LlmRequest, ProviderId

LOGGER = logging.getLogger(__name__)

__all__ = [
    "COMPACTION_MAX_OUTPUT_TOKENS",
    "KEEP_RECENT_MESSAGES",
    "CompactionResult",
    "compact_conversation",
    "local_summary",
]

KEEP_RECENT_MESSAGES = 6
COMPACTION_MAX_OUTPUT_TOKENS = 400
_LOCAL_BULLETS = 10
_LOCAL_BULLET_CHARS = 160
_WHITESPACE = re.compile(r"\s+")


@dataclass(slots=True, frozen=True)
class CompactionResult:
    memory: MemoryState
    messages: list[ChatMessage]


def local_summary(messages: Sequence[ChatMessage]) -> str:
    """Bulleted digest used whenever the model summary is unavailable."""
    bullets = [
        f"- {message.role}: {_WHITESPACE.sub(' ', message.content)[:_LOCAL_BULLET_CHARS]}"
        for message in list(messages)[:_LOCAL_BULLETS]
    ]
    return "\n".join(bullets) or "- No durable memory yet."


async def compact_conversation(
    adapter: ProviderAdapter,
    messages: Sequence[ChatMessage],
    *,
    provider: ProviderId,
    model: str,
    api_key: str | None = None,
    proxy_base_url: str | None = None,
    proxy_enabled: bool = False,
) -> CompactionResult:
    """Summarize all but the last few messages into a single memory message."""

    history = list(messages)
    cutoff = max(0, len(history) - KEEP_RECENT_MESSAGES)
    older, recent = history[:cutoff], history[cutoff:]
    if not older:
        return CompactionResult(memory=MemoryState(summary=""), messages=recent)

    summary = local_summary(older)
    request = LlmRequest(
        provider=provider,
        model=model,
        max_output_tokens=COMPACTION_MAX_OUTPUT_TOKENS,
        messages=[
            LlmMessage.system(COMPACTION_SYSTEM_PROMPT),
            LlmMessage.user(
                build_compaction_prompt({"role": message.role, "content": message.content} for message in older)
            ),
        ],
        tools=(),
        api_key=api_key,
        proxy_base_url=proxy_base_url,
        proxy_enabled=proxy_enabled,
    )
    try:
        response = await adapter.create_completion(request)
    except Exception as exc:
        LOGGER.warning("Memory compaction call failed; using local summary: %s", exc)
    else:
        if isinstance(response, FinalResponse) and response.text.strip():
            summary = response.text.strip()
        else:
            LOGGER.info("Memory compaction returned no usable text; using local summary")

    memory = MemoryState(summary=summary, source_message_ids=tuple(message.id for message in older))
    memory_message = ChatMessage(role="memory", content=f"Conversation memory:\n{summary}")
    LOGGER.debug("Compacted %s messages into memory (%s kept verbatim)", len(older), len(recent))
    return CompactionResult(memory=memory, messages=[memory_message, *recent])
