"""Session store domain service.

Owns the conversation, the agent timeline, tool cards, range changes, turn records and the
rolling memory for the single active session. Every mutation publishes an event on the
:class:`~cellpilot.state.events.EventBus` so presentation layers stay in sync.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from ..documents.types import RangeChange
from .events import (
    BusyChanged,
    EventBus,
    MemoryUpdated,
    MessageAdded,
    MessagesReplaced,
    MessageStreamChunk,
    MessageUpdated,
    RangeChangeAdded,
    RangeChangeReverted,
    SessionCleared,
    TimelineStepChanged,
    ToolCardAdded,
    ToolCardUpdated,
    TurnFinished,
    TurnRecordAdded,
    TurnStarted,
)
from .models import (
    TIMELINE_STEPS,
    ChatMessage,
    MemoryState,
    MessageRole,
    StepStatus,
    TimelineStep,
    TimelineStepId,
    ToolCard,
    TurnRecord,
    new_id,
)

LOGGER = logging.getLogger(__name__)

__all__ = ["SessionStore"]


def _fresh_timeline() -> list[TimelineStep]:
    return [TimelineStep(id=step_id, label=label) for step_id, label in TIMELINE_STEPS]


class SessionStore:
    """In-process state for one conversation.

    The agent runner is the only writer while a turn is in flight; manual actions such as a
    revert must not race with it.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self._bus = event_bus or EventBus()
        self.current_turn_id: str | None = None
        self.busy = False
        self.messages: list[ChatMessage] = []
        self.timeline: list[TimelineStep] = _fresh_timeline()
        self.tool_cards: list[ToolCard] = []
        self.range_changes: list[RangeChange] = []
        self.turn_records: list[TurnRecord] = []
        self.memory: MemoryState | None = None

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    def start_turn(self, prompt: str) -> str:
        """Reset the timeline and tool cards, append the user prompt and return the new turn id."""
        turn_id = new_id("turn")
        self.current_turn_id = turn_id
        self.timeline = _fresh_timeline()
        self.tool_cards = []
        message = ChatMessage(role="user", content=prompt)
        self.messages.append(message)
        LOGGER.debug("SessionStore.start_turn: %s", turn_id)
        self._bus.publish(TurnStarted(turn_id=turn_id, prompt=prompt))
        self._bus.publish(MessageAdded(message_id=message.id, role=message.role))
        return turn_id

    def finish_turn(self) -> None:
        turn_id = self.current_turn_id
        self.current_turn_id = None
        self._bus.publish(TurnFinished(turn_id=turn_id))

    def set_busy(self, busy: bool) -> None:
        self.busy = bool(busy)
        self._bus.publish(BusyChanged(busy=self.busy))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_message(
        self,
        role: MessageRole,
        content: str,
        *,
        message_id: str | None = None,
        **fields: Any,
    ) -> str:
        message = ChatMessage(role=role, content=content, **fields)
        if message_id:
            message.id = message_id
        self.messages.append(message)
        self._bus.publish(MessageAdded(message_id=message.id, role=role))
        return message.id

    def get_message(self, message_id: str) -> ChatMessage | None:
        return next((message for message in self.messages if message.id == message_id), None)

    def update_message(self, message_id: str, **patch: Any) -> bool:
        message = self.get_message(message_id)
        if message is None:
            return False
        for key, value in patch.items():
            setattr(message, key, value)
        self._bus.publish(MessageUpdated(message_id=message_id))
        return True

    def append_to_message(self, message_id: str, chunk: str) -> None:
        message = self.get_message(message_id)
        if message is None:
            return
        message.content = f"{message.content}{chunk}"
        self._bus.publish(MessageStreamChunk(message_id=message_id, content=chunk))

    def replace_messages(self, messages: Iterable[ChatMessage]) -> None:
        self.messages = list(messages)
        self._bus.publish(MessagesReplaced(message_count=len(self.messages)))

    # ------------------------------------------------------------------
    # Timeline and tool cards
    # ------------------------------------------------------------------

    def reset_timeline(self) -> None:
        self.timeline = _fresh_timeline()
        self.tool_cards = []

    def timeline_step(self, step_id: TimelineStepId) -> TimelineStep:
        return next(step for step in self.timeline if step.id == step_id)

    def set_timeline_step(self, step_id: TimelineStepId, status: StepStatus, detail: str | None = None) -> None:
        step = self.timeline_step(step_id)
        step.status = status
        if detail:
            step.details.append(detail)
        self._bus.publish(TimelineStepChanged(step=step_id, status=status, detail=detail))

    def add_tool_card(self, card: ToolCard) -> str:
        self.tool_cards.append(card)
        self._bus.publish(ToolCardAdded(card_id=card.id, tool_name=card.tool_name))
        return card.id

    def get_tool_card(self, card_id: str) -> ToolCard | None:
        return next((card for card in self.tool_cards if card.id == card_id), None)

    def update_tool_card(self, card_id: str, **patch: Any) -> None:
        card = self.get_tool_card(card_id)
        if card is None:
            return
        for key, value in patch.items():
            setattr(card, key, value)
        self._bus.publish(ToolCardUpdated(card_id=card_id, status=card.status, duration_ms=card.duration_ms))

    # ------------------------------------------------------------------
    # Changes, records and memory
    # ------------------------------------------------------------------

    def add_range_change(self, change: RangeChange) -> None:
        self.range_changes.insert(0, change)
        self._bus.publish(
            RangeChangeAdded(
                change_id=change.change_id,
                address=change.address,
                changed_cell_count=change.changed_cell_count,
            )
        )

    def mark_range_change_reverted(self, change_id: str) -> None:
        for change in self.range_changes:
            if change.change_id == change_id:
                change.reverted = True
                self._bus.publish(RangeChangeReverted(change_id=change_id))
                return

    def clear_range_changes(self) -> None:
        self.range_changes = []

    def set_memory(self, memory: MemoryState | None) -> None:
        self.memory = memory
        if memory is not None:
            self._bus.publish(
                MemoryUpdated(summary=memory.summary, source_message_count=len(memory.source_message_ids))
            )

    def add_turn_record(self, record: TurnRecord) -> None:
        self.turn_records.insert(0, record)
        self._bus.publish(TurnRecordAdded(turn_id=record.id, tool_call_count=len(record.tool_calls)))

    def clear_session(self) -> None:
        self.messages = []
        self.timeline = _fresh_timeline()
        self.tool_cards = []
        self.range_changes = []
        self.turn_records = []
        self.memory = None
        self._bus.publish(SessionCleared())
