"""Append-only session log written as JSON lines."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

from ..state.models import MemoryState, ToolCallEntry, TurnRecord
from ..utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)

LOG_HEADERS: tuple[str, ...] = (
    "Timestamp",
    "Type",
    "Prompt",
    "Provider",
    "Model",
    "Estimated Input Tokens",
    "Estimated Output Tokens",
    "Tool Calls",
    "Edited Ranges",
    "Summary",
)
MAX_TOOL_CALL_CHARS = 30_000


def _default_log_path() -> Path:
    return logging_utils.session_log_path()


def format_tool_calls(entries: Iterable[ToolCallEntry]) -> str:
    """Render ``name(args) => status`` items joined by `` | ``."""
    text = " | ".join(f"{entry.name}({entry.args}) => {entry.status}" for entry in entries)
    return text[:MAX_TOOL_CALL_CHARS]


class SessionLogSink(Protocol):
    def log_turn(self, record: TurnRecord) -> None: ...

    def log_memory(self, memory: MemoryState, *, provider: str, model: str) -> None: ...


@dataclass(slots=True)
class NullSessionLog:
    """No-op sink used when logging is disabled."""

    path: Path | None = None

    def log_turn(self, *_: Any, **__: Any) -> None:
        return

    def log_memory(self, *_: Any, **__: Any) -> None:
        return


class JsonlSessionLog:
    """Writes one JSON object per turn or compaction event.

    Write failures are logged and swallowed; the sink must never fail a turn.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path else _default_log_path()

    def log_turn(self, record: TurnRecord) -> None:
        self._append(
            {
                "Timestamp": record.timestamp.isoformat(),
                "Type": "turn",
                "Prompt": record.prompt,
                "Provider": record.provider,
                "Model": record.model,
                "Estimated Input Tokens": record.estimated_input_tokens,
                "Estimated Output Tokens": record.estimated_output_tokens,
                "Tool Calls": format_tool_calls(record.tool_calls),
                "Edited Ranges": ", ".join(record.edited_ranges),
                "Summary": record.summary,
            }
        )

    def log_memory(self, memory: MemoryState, *, provider: str, model: str) -> None:
        self._append(
            {
                "Timestamp": memory.updated_at.isoformat(),
                "Type": "memory",
                "Prompt": "",
                "Provider": provider,
                "Model": model,
                "Estimated Input Tokens": 0,
                "Estimated Output Tokens": 0,
                "Tool Calls": "",
                "Edited Ranges": "",
                "Summary": memory.summary,
            }
        )

    def read_rows(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        rows: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                rows.append(json.loads(line))
        return rows

    def _append(self, row: Mapping[str, Any]) -> None:
        entry = {header: row.get(header, "") for header in LOG_HEADERS}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                json.dump(entry, handle, ensure_ascii=False)
                handle.write("\n")
        except OSError:
            LOGGER.warning("Failed to append to session log %s", self.path, exc_info=True)


def build_session_log(*, enabled: bool, path: Path | str | None = None) -> SessionLogSink:
    if not enabled:
        return NullSessionLog()
    return JsonlSessionLog(path)


__all__ = [
    "JsonlSessionLog",
    "LOG_HEADERS",
    "MAX_TOOL_CALL_CHARS",
    "NullSessionLog",
    "SessionLogSink",
    "build_session_log",
    "format_tool_calls",
]
