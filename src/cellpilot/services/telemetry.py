"""In-process telemetry hooks for budget decisions and turn outcomes."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Mapping

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if listeners and callback in listeners:
        listeners.remove(callback)


def clear_event_listeners() -> None:
    _EVENT_LISTENERS.clear()


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


class InMemoryTelemetrySink:
    """Bounded buffer collecting emitted payloads, handy for the CLI and tests."""

    def __init__(self, *event_names: str, capacity: int = 200) -> None:
        self._events: deque[dict[str, Any]] = deque(maxlen=max(1, capacity))
        self._event_names = event_names
        for name in event_names:
            register_event_listener(name, self.record)

    def record(self, payload: dict[str, Any]) -> None:
        self._events.append(payload)

    def events(self, event_name: str | None = None) -> list[dict[str, Any]]:
        return [event for event in self._events if event_name is None or event.get("event") == event_name]

    def close(self) -> None:
        for name in self._event_names:
            unregister_event_listener(name, self.record)


__all__ = [
    "InMemoryTelemetrySink",
    "clear_event_listeners",
    "emit",
    "register_event_listener",
    "unregister_event_listener",
]
