"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Literal, Mapping

from ..context.regex_rules import RegexConfig
from ..context.types import ContextLimitConfig

__all__ = [
    "Settings",
    "SettingsStore",
    "ContextLimitSettings",
    "TokenCounterMode",
    "default_settings_path",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".threadloom"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADLOOM_MODEL": "default_model",
    "THREADLOOM_TOKEN_COUNTER": "token_counter",
    "THREADLOOM_EVENT_LOG_DIR": "event_log_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADLOOM_DEBUG_LOGGING": "debug_logging",
    "THREADLOOM_DEBUG_EVENT_LOGGING": "debug_event_logging",
    "THREADLOOM_CONTEXT_LIMIT_ENABLED": "context_limit.enabled",
    "THREADLOOM_CONVERT_HTML_TO_MARKDOWN": "convert_html_to_markdown",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADLOOM_MAX_CONTEXT_TOKENS": "context_limit.max_tokens",
    "THREADLOOM_PRESERVE_HEAD": "context_limit.preserve_head",
    "THREADLOOM_RETAINED_CHARACTERS": "context_limit.retained_characters",
    "THREADLOOM_HTML_TO_MARKDOWN_KEEP_LAST": "html_to_markdown_keep_last",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}

TokenCounterMode = Literal["tiktoken", "approx"]


def default_settings_path() -> Path:
    return _DEFAULT_SETTINGS_PATH


@dataclass(slots=True)
class ContextLimitSettings:
    """Global context budget, used when an agent does not define its own."""

    enabled: bool = True
    max_tokens: int | None = 128_000
    preserve_head: int = 0
    retained_characters: int = 0
    unit: Literal["tokens", "characters"] = "tokens"
    reserve_preset_tokens: bool = True

    def to_config(self) -> ContextLimitConfig:
        return ContextLimitConfig(
            enabled=self.enabled,
            max_tokens=self.max_tokens,
            preserve_head=max(0, int(self.preserve_head)),
            retained_characters=max(0, int(self.retained_characters)),
            unit=self.unit,
            reserve_preset_tokens=self.reserve_preset_tokens,
        )


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between runs."""

    default_model: str = "gpt-4o-mini"
    token_counter: TokenCounterMode = "tiktoken"
    context_limit: ContextLimitSettings = field(default_factory=ContextLimitSettings)
    regex_config: RegexConfig = field(default_factory=RegexConfig)
    # Older history turns are converted from HTML to Markdown; the newest
    # html_to_markdown_keep_last turns are left untouched.
    convert_html_to_markdown: bool = False
    html_to_markdown_keep_last: int = 5
    debug_logging: bool = False
    debug_event_logging: bool = False
    event_log_dir: str | None = None
    log_dir: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["regex_config"] = self.regex_config.to_dict()
        return data


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path else _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            limit_payload = data.get("context_limit")
            if isinstance(limit_payload, Mapping):
                try:
                    data["context_limit"] = ContextLimitSettings(**limit_payload)
                except TypeError:
                    LOGGER.warning("Ignoring malformed context_limit settings in %s", self._path)
                    data["context_limit"] = ContextLimitSettings()
            if "regex_config" in data:
                try:
                    data["regex_config"] = RegexConfig.from_dict(data["regex_config"])
                except (TypeError, ValueError, AttributeError) as exc:
                    LOGGER.warning("Ignoring malformed regex_config settings: %s", exc)
                    data["regex_config"] = RegexConfig()
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug("Settings loaded from %s", self._path)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = settings.to_dict()
        payload["version"] = _SETTINGS_VERSION
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain a JSON object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        """Apply ``overrides``; dotted keys such as ``context_limit.max_tokens`` reach nested fields."""

        allowed = {field.name for field in fields(Settings)}
        nested_allowed = {field.name for field in fields(ContextLimitSettings)}
        filtered: Dict[str, Any] = {}
        limit_overrides: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            prefix, _, nested = key.partition(".")
            if nested:
                if prefix == "context_limit" and nested in nested_allowed:
                    limit_overrides[nested] = value
                else:
                    LOGGER.warning("Ignoring unknown %s setting override %s", source, key)
                continue
            if key not in allowed:
                LOGGER.warning("Ignoring unknown %s setting override %s", source, key)
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged_metadata = dict(settings.metadata or {})
            merged_metadata.update(metadata_override)
            filtered["metadata"] = merged_metadata
        if limit_overrides:
            filtered["context_limit"] = replace(settings.context_limit, **limit_overrides)
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

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
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}
