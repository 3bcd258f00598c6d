"""Session state and its observer events."""

from .events import EventBus
from .models import ChatMessage, MemoryState, TimelineStep, ToolCallEntry, ToolCard, TurnRecord
from .session_store import SessionStore

__all__ = [
    "ChatMessage",
    "EventBus",
    "MemoryState",
    "SessionStore",
    "TimelineStep",
    "ToolCallEntry",
    "ToolCard",
    "TurnRecord",
]
