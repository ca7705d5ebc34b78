"""Tests for token counters and the per-model registry."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from helpers import WordCounter
from threadloom.context import tokens
from threadloom.context.tokens import (
    MESSAGE_OVERHEAD_TOKENS,
    ApproxByteCounter,
    CharacterCounter,
    TiktokenCounter,
    TokenCounterRegistry,
    estimate_message_tokens,
)
from threadloom.context.types import ProcessableMessage


class _FakeEncoding:
    def encode(self, text: str, disallowed_special=()) -> list[int]:
        return [0] * len(text.split())


def test_approx_counter_rounds_up_bytes() -> None:
    counter = ApproxByteCounter()

    assert counter.count("") == 0
    assert counter.count("a") == 1
    assert counter.count("abcdefgh") == 2
    assert counter.count("abcdefghi") == 3
    assert counter.count("é" * 2) == 1


def test_character_counter() -> None:
    assert CharacterCounter().count("héllo") == 5
    assert CharacterCounter().count("") == 0


def test_estimate_message_adds_overhead_only_for_tokens() -> None:
    message = ProcessableMessage(role="user", content="one two three")

    assert estimate_message_tokens(message, WordCounter()) == 3 + MESSAGE_OVERHEAD_TOKENS
    assert estimate_message_tokens(message, CharacterCounter(), unit="characters") == 13
    assert estimate_message_tokens({"role": "user", "content": [{"type": "text", "text": "a b"}]}, WordCounter()) == 6
    assert estimate_message_tokens({"content": "a b"}, WordCounter()) == 2


def test_tiktoken_counter_uses_model_encoding(monkeypatch: pytest.MonkeyPatch) -> None:
    requested: list[str] = []

    def fake_for_model(name: str) -> _FakeEncoding:
        requested.append(name)
        return _FakeEncoding()

    monkeypatch.setattr(tokens.tiktoken, "encoding_for_model", fake_for_model)

    counter = TiktokenCounter("gpt-4o")

    assert counter.count("one two three") == 3
    assert counter.count("") == 0
    assert requested == ["gpt-4o"]


def test_tiktoken_counter_falls_back_to_default_encoding(monkeypatch: pytest.MonkeyPatch) -> None:
    def unknown_model(name: str):
        raise KeyError(name)

    loaded: list[str] = []

    def fake_get_encoding(name: str) -> _FakeEncoding:
        loaded.append(name)
        return _FakeEncoding()

    monkeypatch.setattr(tokens.tiktoken, "encoding_for_model", unknown_model)
    monkeypatch.setattr(tokens.tiktoken, "get_encoding", fake_get_encoding)

    TiktokenCounter("my-local-model")

    assert loaded == ["cl100k_base"]


def test_tiktoken_counter_requires_model_name() -> None:
    with pytest.raises(ValueError):
        TiktokenCounter("")


class TestRegistry:
    def test_register_and_lookup_is_case_insensitive(self) -> None:
        registry = TokenCounterRegistry()
        counter = WordCounter()

        registry.register(" GPT-Test ", counter)

        assert registry.has("gpt-test")
        assert registry.get("Gpt-Test") is counter
        assert registry.count("gpt-test", "a b c") == 3
        registry.unregister("gpt-test")
        assert not registry.has("gpt-test")

    def test_register_requires_name(self) -> None:
        with pytest.raises(ValueError):
            TokenCounterRegistry().register("  ", WordCounter())

    def test_get_unknown_returns_fallback(self) -> None:
        fallback = CharacterCounter()

        assert TokenCounterRegistry(fallback=fallback).get("missing") is fallback

    def test_ensure_caches_tiktoken_counter(self, monkeypatch: pytest.MonkeyPatch) -> None:
        built: list[str] = []

        def fake_counter(model_name: str) -> SimpleNamespace:
            built.append(model_name)
            return SimpleNamespace(model_name=model_name, count=len, estimate=len)

        monkeypatch.setattr(tokens, "TiktokenCounter", fake_counter)
        registry = TokenCounterRegistry()

        first = registry.ensure("gpt-4o")
        second = registry.ensure("gpt-4o")

        assert first is second
        assert built == ["gpt-4o"]

    def test_ensure_falls_back_when_encoding_unavailable(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        def offline(model_name: str):
            raise OSError("network unreachable")

        monkeypatch.setattr(tokens, "TiktokenCounter", offline)
        registry = TokenCounterRegistry()

        counter = registry.ensure("gpt-4o")

        assert isinstance(counter, ApproxByteCounter)
        assert registry.get("gpt-4o") is counter
        assert "byte estimate" in caplog.text

    def test_ensure_without_model_returns_fallback(self) -> None:
        registry = TokenCounterRegistry()

        assert registry.ensure(None) is registry.get(None)

    def test_global_instance_is_shared(self) -> None:
        assert TokenCounterRegistry.global_instance() is TokenCounterRegistry.global_instance()
