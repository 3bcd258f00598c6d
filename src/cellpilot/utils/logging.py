"""Logging setup shared by the CLI and embedding applications.

Records go to a rotating ``cellpilot.log`` (and optionally stderr). Every handler installed here
carries a :class:`SecretMaskingFilter`, so provider API keys that end up in exception text or
request URLs never reach disk.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from dataclasses import dataclass
from pathlib import Path

__all__ = [
    "LogConfig",
    "SecretMaskingFilter",
    "get_log_path",
    "mask_secrets",
    "session_log_path",
    "setup_logging",
]

LOG_DIR_ENV = "CELLPILOT_LOG_DIR"
LOG_LEVEL_ENV = "CELLPILOT_LOG_LEVEL"
SESSION_LOG_NAME = "session-log.jsonl"

_DEFAULT_LOG_DIR = Path.home() / ".cellpilot" / "logs"
_LOG_FILE_NAME = "cellpilot.log"
_QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# OpenAI/Anthropic style keys, Google API keys, and ``?key=`` query parameters.
_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"), "sk-***"),
    (re.compile(r"\bAIza[0-9A-Za-z_\-]{20,}"), "AIza***"),
    (re.compile(r"([?&]key=)[^&\s\"']+"), r"\1***"),
)

_active_config: LogConfig | None = None


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Where and how verbosely the application logs."""

    level: int = logging.INFO
    directory: Path = _DEFAULT_LOG_DIR
    console: bool = True
    max_bytes: int = 1_000_000
    backup_count: int = 3

    @classmethod
    def from_env(
        cls,
        level: int | str | None = None,
        *,
        log_dir: Path | str | None = None,
        console: bool = True,
    ) -> "LogConfig":
        """Build a config, letting ``CELLPILOT_LOG_LEVEL``/``CELLPILOT_LOG_DIR`` fill the gaps."""

        raw_level = level if level is not None else os.environ.get(LOG_LEVEL_ENV)
        directory = log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR
        return cls(level=_parse_level(raw_level), directory=Path(directory).expanduser(), console=console)

    @property
    def log_path(self) -> Path:
        return self.directory / _LOG_FILE_NAME

    @property
    def session_log_path(self) -> Path:
        return self.directory / SESSION_LOG_NAME


class SecretMaskingFilter(logging.Filter):
    """Rewrite records so API keys are masked before any handler formats them."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            # Malformed records are reported by the handler when it formats them.
            return True
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def mask_secrets(text: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def setup_logging(config: LogConfig | None = None, *, force: bool = False) -> Path:
    """Install the file (and optional stderr) handlers on the root logger.

    Repeated calls keep the first configuration unless ``force`` is set.
    """

    global _active_config
    if _active_config is not None and not force:
        return _active_config.log_path

    active = config or LogConfig.from_env()
    active.directory.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            active.log_path,
            maxBytes=active.max_bytes,
            backupCount=active.backup_count,
            encoding="utf-8",
        )
    ]
    if active.console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
    masking = SecretMaskingFilter()
    for handler in handlers:
        handler.setLevel(active.level)
        handler.setFormatter(formatter)
        handler.addFilter(masking)

    logging.basicConfig(level=active.level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    # HTTP client chatter stays at WARNING even when the app runs at DEBUG.
    quiet_level = max(logging.WARNING, active.level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    _active_config = active
    logging.getLogger(__name__).debug(
        "Logging configured at %s -> %s", logging.getLevelName(active.level), active.log_path
    )
    return active.log_path


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging` ran."""

    return _active_config.log_path if _active_config is not None else None


def session_log_path() -> Path:
    """Location of the JSONL session log, next to the application log."""

    config = _active_config or LogConfig.from_env()
    return config.session_log_path


def _parse_level(level: int | str | None) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    candidate = logging.getLevelName(str(level).strip().upper())
    return candidate if isinstance(candidate, int) else logging.INFO
