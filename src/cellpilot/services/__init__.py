"""Settings persistence, the session log sink and telemetry hooks."""

from .session_log import JsonlSessionLog, NullSessionLog, SessionLogSink, build_session_log
from .settings import SecretVault, Settings, SettingsError, SettingsStore, redact_secret

__all__ = [
    "JsonlSessionLog",
    "NullSessionLog",
    "SecretVault",
    "SessionLogSink",
    "Settings",
    "SettingsError",
    "SettingsStore",
    "build_session_log",
    "redact_secret",
]
