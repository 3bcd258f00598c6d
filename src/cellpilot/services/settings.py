"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.types import PROVIDER_IDS
from ..ai.utils.tokens import clamp_budget

__all__ = [
    "DEFAULT_MODELS",
    "MAX_TOKEN_BUDGET",
    "MIN_TOKEN_BUDGET",
    "Settings",
    "SettingsError",
    "SettingsStore",
    "SecretVault",
    "parse_override",
    "redact_secret",
    "redacted_settings",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".cellpilot"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_API_KEYS_FIELD = "api_keys_ciphertext"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

MIN_TOKEN_BUDGET = 1_000
MAX_TOKEN_BUDGET = 200_000

DEFAULT_MODELS: Mapping[str, str] = {
    "gemini": "gemini-3-flash-preview",
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-sonnet-latest",
}

_ENV_OVERRIDES: Mapping[str, str] = {
    "CELLPILOT_PROVIDER": "provider",
    "CELLPILOT_PROXY_BASE_URL": "proxy_base_url",
    "CELLPILOT_SEARCH_ENDPOINT": "search_endpoint",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "CELLPILOT_APPROVAL_MODE": "approval_mode",
    "CELLPILOT_WEB_SEARCH": "web_search_enabled",
    "CELLPILOT_PROXY_ENABLED": "proxy_enabled",
    "CELLPILOT_LOGGING": "logging_enabled",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "CELLPILOT_MAX_TOKEN_BUDGET": "max_token_budget",
    "CELLPILOT_RISKY_WRITE_THRESHOLD": "risky_write_cell_threshold",
}


class SettingsError(ValueError):
    """Raised for unknown settings keys or values that cannot be coerced."""


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    provider: str = "gemini"
    models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    api_keys: dict[str, str] = field(default_factory=dict)
    approval_mode: bool = True
    web_search_enabled: bool = False
    risky_write_cell_threshold: int = 500
    max_token_budget: int = 24_000
    logging_enabled: bool = True
    proxy_base_url: str = ""
    proxy_enabled: bool = False
    search_endpoint: str = ""
    warn_on_prompt_injection: bool = True
    request_timeout: float = 60.0
    max_tool_iterations: int = 8
    max_history_messages: int = 16

    @property
    def model(self) -> str:
        return self.model_for(self.provider)

    @property
    def api_key(self) -> str:
        return self.api_key_for(self.provider)

    def model_for(self, provider: str) -> str:
        return self.models.get(provider) or DEFAULT_MODELS.get(provider, "")

    def api_key_for(self, provider: str) -> str:
        return self.api_keys.get(provider, "")

    def normalized(self) -> "Settings":
        """Return a copy with the budget clamped and the risky-write threshold floored at 1."""
        provider = self.provider if self.provider in PROVIDER_IDS else "gemini"
        if provider != self.provider:
            LOGGER.warning("Unknown provider %r; falling back to %s", self.provider, provider)
        try:
            threshold = max(1, int(self.risky_write_cell_threshold))
        except (TypeError, ValueError):
            threshold = 1
        return replace(
            self,
            provider=provider,
            models={**DEFAULT_MODELS, **{k: v for k, v in self.models.items() if v}},
            max_token_budget=clamp_budget(self.max_token_budget, MIN_TOKEN_BUDGET, MAX_TOKEN_BUDGET),
            risky_write_cell_threshold=threshold,
        )


class SecretVault:
    """Encrypts API keys with a symmetric Fernet key stored next to the settings file."""

    name = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def strategy(self) -> str:
        return self.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.name}:{token}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if prefix != self.name or not payload:
            LOGGER.warning("Unknown secret token prefix %s; returning ciphertext.", prefix or None)
            return token
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:  # pragma: no cover - indicates tampering
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = Path(path) if path is not None else _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI then environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        needs_migration = False

        if payload:
            api_keys, migrated = self._decrypt_api_keys(payload.pop(_API_KEYS_FIELD, None), payload.pop("api_keys", None))
            needs_migration = migrated
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            settings = replace(settings, api_keys=api_keys)
            LOGGER.debug("Settings loaded from %s (provider=%s)", self._path, settings.provider)

        version_mismatch = bool(payload) and payload.get("version") != _SETTINGS_VERSION
        if needs_migration or version_mismatch:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - depends on filesystem
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self.apply_overrides(settings, overrides, source="CLI")

        settings = self._apply_env_overrides(settings)
        return settings.normalized()

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        body = json.dumps(self._serialize(settings), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        """Apply ``overrides``; dotted keys (``models.openai``) address per-provider maps."""

        updates: Dict[str, Any] = {}
        models = dict(settings.models)
        api_keys = dict(settings.api_keys)
        for key, value in overrides.items():
            if value is None:
                continue
            section, _, provider = key.partition(".")
            if provider:
                if section not in ("models", "api_keys") or provider not in PROVIDER_IDS:
                    raise SettingsError(f"Unknown setting {key!r}")
                (models if section == "models" else api_keys)[provider] = str(value)
                continue
            updates[key] = _coerce(key, value)
        updates["models"] = models
        updates["api_keys"] = api_keys
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(overrides))
        return replace(settings, **updates)

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        api_keys = data.pop("api_keys", {}) or {}
        ciphertexts = {provider: self._vault.encrypt(key) for provider, key in api_keys.items() if key}
        if ciphertexts:
            data[_API_KEYS_FIELD] = ciphertexts
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for provider in PROVIDER_IDS:
            model = os.environ.get(f"CELLPILOT_MODEL_{provider.upper()}")
            if model:
                overrides[f"models.{provider}"] = model
            api_key = os.environ.get(f"CELLPILOT_{provider.upper()}_API_KEY")
            if api_key:
                overrides[f"api_keys.{provider}"] = api_key
        if overrides:
            settings = self.apply_overrides(settings, overrides, source="environment")
        return settings

    def _decrypt_api_keys(self, ciphertexts: Any, legacy_plaintext: Any) -> tuple[dict[str, str], bool]:
        keys: dict[str, str] = {}
        if isinstance(ciphertexts, Mapping):
            for provider, token in ciphertexts.items():
                try:
                    keys[str(provider)] = self._vault.decrypt(str(token))
                except ValueError as exc:
                    LOGGER.warning("Unable to decrypt %s API key: %s", provider, exc)
        migrated = False
        if isinstance(legacy_plaintext, Mapping):
            for provider, key in legacy_plaintext.items():
                if key and str(provider) not in keys:
                    keys[str(provider)] = str(key)
                    migrated = True
            if migrated:
                LOGGER.info("Detected legacy plaintext API keys; migrating to encrypted storage.")
        return keys, migrated


def parse_override(text: str) -> tuple[str, str]:
    """Split a ``KEY=VALUE`` command line override."""

    key, sep, value = (text or "").partition("=")
    key = key.strip()
    if not sep or not key:
        raise SettingsError(f"Override {text!r} must look like KEY=VALUE")
    return key, value.strip()


def _coerce(key: str, value: Any) -> Any:
    declared = {item.name: item for item in fields(Settings)}
    if key not in declared or key in ("models", "api_keys"):
        raise SettingsError(f"Unknown setting {key!r}")
    default = getattr(Settings(), key)
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        lowered = str(value).strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise SettingsError(f"Setting {key!r} expects a boolean, got {value!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise SettingsError(f"Setting {key!r} expects an integer, got {value!r}") from exc
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise SettingsError(f"Setting {key!r} expects a number, got {value!r}") from exc
    return str(value)


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"api_keys"}
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


def redacted_settings(settings: Settings) -> dict[str, Any]:
    data = asdict(settings)
    data["api_keys"] = {provider: redact_secret(key) for provider, key in settings.api_keys.items()}
    return data
