"""Tests for settings persistence and overrides."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from threadloom.context.regex_rules import RegexConfig, RegexPreset, RegexRule
from threadloom.services.settings import ContextLimitSettings, Settings, SettingsStore


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings == Settings()
    assert settings.context_limit.max_tokens == 128_000


def test_round_trip_preserves_nested_values(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "nested" / "settings.json")
    settings = Settings(
        default_model="gpt-4.1",
        token_counter="approx",
        context_limit=ContextLimitSettings(max_tokens=2048, preserve_head=2, unit="characters"),
        regex_config=RegexConfig(presets=(RegexPreset(name="p", id="p", rules=(RegexRule(regex="a", id="r"),)),)),
        metadata={"theme": "dark"},
    )

    path = store.save(settings)

    assert path.exists()
    assert not path.with_suffix(".tmp").exists()
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1
    assert store.load() == settings


@pytest.mark.parametrize("body", ["{not json", "[1, 2, 3]"])
def test_invalid_file_logs_and_returns_defaults(
    tmp_path: Path, body: str, caplog: pytest.LogCaptureFixture
) -> None:
    path = tmp_path / "settings.json"
    path.write_text(body, encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        settings = SettingsStore(path).load()

    assert settings == Settings()
    assert str(path) in caplog.text


def test_malformed_context_limit_falls_back(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"default_model": "m", "context_limit": {"bogus": 1}}), encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        settings = SettingsStore(path).load()

    assert settings.default_model == "m"
    assert settings.context_limit == ContextLimitSettings()
    assert "context_limit" in caplog.text


def test_unknown_keys_in_file_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"version": 1, "legacy_field": True, "debug_logging": True}), encoding="utf-8")

    assert SettingsStore(path).load().debug_logging is True


def test_overrides_reach_nested_fields(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    store = SettingsStore(tmp_path / "settings.json")

    with caplog.at_level(logging.WARNING):
        settings = store.load(
            overrides={
                "default_model": "override-model",
                "context_limit.max_tokens": 500,
                "context_limit.nope": 1,
                "unknown": "x",
                "metadata": {"a": 1},
            }
        )

    assert settings.default_model == "override-model"
    assert settings.context_limit.max_tokens == 500
    assert settings.metadata == {"a": 1}
    assert "context_limit.nope" in caplog.text
    assert "override unknown" in caplog.text


def test_environment_overrides_win_over_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    store.save(Settings(default_model="from-file"))
    monkeypatch.setenv("THREADLOOM_MODEL", "from-env")
    monkeypatch.setenv("THREADLOOM_TOKEN_COUNTER", "approx")
    monkeypatch.setenv("THREADLOOM_DEBUG_EVENT_LOGGING", "yes")
    monkeypatch.setenv("THREADLOOM_CONTEXT_LIMIT_ENABLED", "off")
    monkeypatch.setenv("THREADLOOM_MAX_CONTEXT_TOKENS", "4096")
    monkeypatch.setenv("THREADLOOM_PRESERVE_HEAD", "1")

    settings = store.load(overrides={"default_model": "from-cli"})

    assert settings.default_model == "from-env"
    assert settings.token_counter == "approx"
    assert settings.debug_event_logging is True
    assert settings.context_limit.enabled is False
    assert settings.context_limit.max_tokens == 4096
    assert settings.context_limit.preserve_head == 1


def test_html_conversion_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("THREADLOOM_CONVERT_HTML_TO_MARKDOWN", "on")
    monkeypatch.setenv("THREADLOOM_HTML_TO_MARKDOWN_KEEP_LAST", "2")

    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.convert_html_to_markdown is True
    assert settings.html_to_markdown_keep_last == 2


def test_invalid_integer_environment_override_is_ignored(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setenv("THREADLOOM_RETAINED_CHARACTERS", "lots")

    with caplog.at_level(logging.WARNING):
        settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.context_limit.retained_characters == 0
    assert "THREADLOOM_RETAINED_CHARACTERS" in caplog.text


def test_context_limit_settings_to_config() -> None:
    config = ContextLimitSettings(max_tokens=10, preserve_head=-3, retained_characters=4, unit="characters").to_config()

    assert config.max_tokens == 10
    assert config.preserve_head == 0
    assert config.retained_characters == 4
    assert config.unit == "characters"
