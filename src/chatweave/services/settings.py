"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..ai.client import ClientSettings
from ..ai.orchestration.context_window import (
    ASSISTANT_LABEL_DEFAULT,
    DEFAULT_MAX_RESPONSE_TOKENS,
    USER_LABEL_DEFAULT,
)
from ..ai.orchestration.request_builder import DEFAULT_BASE_URL

__all__ = ["Settings", "SettingsStore"]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".chatweave"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATWEAVE_API_KEY": "api_key",
    "CHATWEAVE_BASE_URL": "base_url",
    "CHATWEAVE_MODEL": "model",
    "CHATWEAVE_ORGANIZATION": "organization",
    "CHATWEAVE_SYSTEM_MESSAGE": "system_message",
    "CHATWEAVE_LOG_DIR": "log_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATWEAVE_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATWEAVE_REQUEST_TIMEOUT": "request_timeout",
    "CHATWEAVE_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "CHATWEAVE_MAX_MODEL_TOKENS": "max_model_tokens",
    "CHATWEAVE_MAX_RESPONSE_TOKENS": "max_response_tokens",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    model: str | None = None
    temperature: float | None = None
    organization: str | None = None
    system_message: str | None = None
    max_model_tokens: int | None = None
    max_response_tokens: int = DEFAULT_MAX_RESPONSE_TOKENS
    user_label: str = USER_LABEL_DEFAULT
    assistant_label: str = ASSISTANT_LABEL_DEFAULT
    with_context: bool = True
    request_timeout: float = 90.0
    default_headers: dict[str, str] = field(default_factory=dict)
    completion_params: dict[str, Any] = field(default_factory=dict)
    debug_logging: bool = False
    log_dir: str | None = None

    def to_client_settings(self) -> ClientSettings:
        """Translate persisted settings into the client's configuration."""

        params = dict(self.completion_params)
        if self.temperature is not None:
            params["temperature"] = self.temperature
        return ClientSettings(
            api_key=self.api_key,
            base_url=self.base_url,
            organization=self.organization,
            model=self.model,
            completion_params=params,
            system_message=self.system_message,
            max_model_tokens=self.max_model_tokens,
            max_response_tokens=self.max_response_tokens,
            user_label=self.user_label,
            assistant_label=self.assistant_label,
            with_context=self.with_context,
            request_timeout=self.request_timeout,
            default_headers=dict(self.default_headers),
            debug_logging=self.debug_logging,
        )


class SettingsStore:
    """Persistence adapter for :class:`Settings`.

    The API key is accepted from the environment or runtime overrides but is
    never written to disk.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying runtime/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            payload.pop("api_key", None)
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug("Settings loaded from %s", self._path)

        if overrides:
            settings = self.apply_overrides(settings, overrides, source="runtime")
        return self._apply_env_overrides(settings)

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
        allowed = {item.name for item in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        params_override = filtered.get("completion_params")
        if isinstance(params_override, Mapping):
            merged = dict(settings.completion_params or {})
            merged.update(params_override)
            filtered["completion_params"] = merged
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        data.pop("api_key", None)
        data["version"] = _SETTINGS_VERSION
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
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

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
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self.apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}
