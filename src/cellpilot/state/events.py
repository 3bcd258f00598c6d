"""Event bus infrastructure for observing session state.

Every mutation of the :class:`~cellpilot.state.session_store.SessionStore` publishes one of the
events below so presentation layers (the CLI, a chat panel, an activity feed) can follow a turn
without reaching into the store.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all session events."""


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Turn events
# =============================================================================


@dataclass(slots=True)
class TurnStarted(Event):
    """Emitted when a user prompt starts a new turn.

    Attributes:
        turn_id: The unique identifier of the turn (e.g. ``"turn-1a2b3c4d"``).
        prompt: The user prompt that initiated the turn.
    """

    turn_id: str
    prompt: str


@dataclass(slots=True)
class TurnFinished(Event):
    turn_id: str | None


@dataclass(slots=True)
class BusyChanged(Event):
    busy: bool


@dataclass(slots=True)
class TimelineStepChanged(Event):
    """Emitted when an agent timeline step changes status.

    Attributes:
        step: One of ``understanding``, ``context``, ``planning``, ``execution``, ``summary``.
        status: ``pending``, ``running``, ``success`` or ``error``.
        detail: Detail line appended to the step, if any.
    """

    step: str
    status: str
    detail: str | None = None


# =============================================================================
# Conversation events
# =============================================================================


@dataclass(slots=True)
class MessageAdded(Event):
    message_id: str
    role: str


@dataclass(slots=True)
class MessageUpdated(Event):
    message_id: str


@dataclass(slots=True)
class MessageStreamChunk(Event):
    """Emitted for each streamed text delta appended to a message."""

    message_id: str
    content: str


_QUIET_EVENT_TYPES.add(MessageStreamChunk)


@dataclass(slots=True)
class MessagesReplaced(Event):
    """Emitted when memory compaction swaps the conversation for its compacted form."""

    message_count: int


@dataclass(slots=True)
class MemoryUpdated(Event):
    summary: str
    source_message_count: int


# =============================================================================
# Tool and change events
# =============================================================================


@dataclass(slots=True)
class ToolCardAdded(Event):
    card_id: str
    tool_name: str


@dataclass(slots=True)
class ToolCardUpdated(Event):
    """Emitted when a tool card finishes, fails or is cancelled.

    Attributes:
        card_id: Identifier of the card.
        status: New status of the card.
        duration_ms: Execution time in milliseconds, when known.
    """

    card_id: str
    status: str
    duration_ms: float | None = None


@dataclass(slots=True)
class RangeChangeAdded(Event):
    change_id: str
    address: str
    changed_cell_count: int


@dataclass(slots=True)
class RangeChangeReverted(Event):
    change_id: str


@dataclass(slots=True)
class TurnRecordAdded(Event):
    turn_id: str
    tool_call_count: int


@dataclass(slots=True)
class SessionCleared(Event):
    pass


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus for decoupled communication.

    Handlers are stored as weak references where possible (bound methods) and invoked
    synchronously in subscription order. A failing handler is logged and the remaining handlers
    still run.

    Example::

        bus = EventBus()

        def on_turn_started(event: TurnStarted) -> None:
            print(f"Working on: {event.prompt}")

        bus.subscribe(TurnStarted, on_turn_started)
        bus.publish(TurnStarted(turn_id="turn-1", prompt="Sum column B"))
        bus.unsubscribe(TurnStarted, on_turn_started)

    Thread Safety:
        This implementation is NOT thread-safe. Publish from the event loop thread only.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register a handler to receive events of exactly ``event_type``."""
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug("Subscribed handler %s to event type %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                logger.debug(
                    "Unsubscribed handler %s from event type %s", _handler_name(handler), event_type.__name__
                )
                return

    def publish(self, event: E) -> None:
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if handlers is None:
            if not is_quiet:
                logger.debug("No handlers for event type %s", event_type.__name__)
            return

        if not is_quiet:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead_indices: list[int] = []
        for index, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(index)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s", _handler_name(handler), event_type.__name__
                )

        for index in reversed(dead_indices):
            handlers.pop(index)

    def clear(self) -> None:
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for plain callables."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Any) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "TurnStarted",
    "TurnFinished",
    "BusyChanged",
    "TimelineStepChanged",
    "MessageAdded",
    "MessageUpdated",
    "MessageStreamChunk",
    "MessagesReplaced",
    "MemoryUpdated",
    "ToolCardAdded",
    "ToolCardUpdated",
    "RangeChangeAdded",
    "RangeChangeReverted",
    "TurnRecordAdded",
    "SessionCleared",
]
