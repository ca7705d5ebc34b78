"""Tests for preset placement around and inside the history."""

from __future__ import annotations

import logging

import pytest

from helpers import history, make_context, texts
from threadloom.context.processors import injection_assembler
from threadloom.context.processors.injection_assembler import (
    apply_depth_injections,
    classify_presets,
    parse_depth_config,
)
from threadloom.context.types import AgentConfig, InjectionStrategy, PresetMessage


def _agent(*presets: PresetMessage, model_id: str = "openai:gpt-4o") -> AgentConfig:
    return AgentConfig(id="agent", model_id=model_id, preset_messages=presets)


def _four() -> list:
    return history(("user", "h0"), ("assistant", "h1"), ("user", "h2"), ("assistant", "h3"))


class TestParseDepthConfig:
    def test_points_and_lists(self) -> None:
        assert parse_depth_config("5", 10) == [5]
        assert parse_depth_config("3, 1, 3", 10) == [3, 1]

    def test_loop_forms(self) -> None:
        assert parse_depth_config("10~5", 22) == [10, 15, 20]
        assert parse_depth_config("0:2", 5) == [0, 2, 4]

    def test_depths_beyond_history_are_dropped(self) -> None:
        assert parse_depth_config("2, 8", 4) == [2]
        assert parse_depth_config("10~5", 9) == []

    def test_zero_interval_is_single_point(self) -> None:
        assert parse_depth_config("3~0", 10) == [3]

    def test_malformed_segments_are_ignored(self) -> None:
        assert parse_depth_config("abc, 2, -1", 10) == [2]


class TestDepthInjection:
    def test_depth_list_on_four_messages(self) -> None:
        x = PresetMessage(role="system", content="X", injection=InjectionStrategy(depth_config="1, 3"))

        result = apply_depth_injections(_four(), [x], [x])

        assert texts(result) == ["h0", "X", "h1", "h2", "X", "h3"]
        assert {message.source_type for message in result if message.text == "X"} == {"depth_injection"}

    def test_depth_zero_appends_after_newest(self) -> None:
        x = PresetMessage(role="system", content="X", injection=InjectionStrategy(depth=0))

        assert texts(apply_depth_injections(_four(), [x], [x])) == ["h0", "h1", "h2", "h3", "X"]

    def test_depth_larger_than_history_clamps_to_start(self) -> None:
        x = PresetMessage(role="system", content="X", injection=InjectionStrategy(depth=99))

        assert texts(apply_depth_injections(_four(), [x], [x])) == ["X", "h0", "h1", "h2", "h3"]

    def test_same_depth_sorted_by_order(self) -> None:
        late = PresetMessage(role="system", content="late", injection=InjectionStrategy(depth=1, order=5))
        early = PresetMessage(role="system", content="early", injection=InjectionStrategy(depth=1, order=1))

        result = apply_depth_injections(_four(), [late, early], [late, early])

        assert texts(result) == ["h0", "h1", "h2", "early", "late", "h3"]
        assert [message.source_index for message in result if message.source_type == "depth_injection"] == [1, 0]

    def test_depth_wins_over_anchor(self) -> None:
        both = PresetMessage(
            role="system",
            content="both",
            injection=InjectionStrategy(depth=1, anchor_target="chat_history"),
        )

        classified = classify_presets([both])

        assert classified.depth == [both]
        assert classified.anchor == []


class TestAssembleContext:
    def test_skeleton_wraps_history_at_chat_history_anchor(self) -> None:
        agent = _agent(
            PresetMessage(role="system", content="main prompt", id="main"),
            PresetMessage(role="system", type="chat_history", id="history"),
            PresetMessage(role="system", content="jailbreak", id="post"),
        )
        context = make_context(_four(), agent=agent)

        injection_assembler.assemble_context(context)

        assert texts(context.messages) == ["main prompt", "h0", "h1", "h2", "h3", "jailbreak"]
        assert context.messages[0].source_type == "agent_preset"
        assert context.messages[0].source_index == 0

    def test_history_appended_without_chat_history_anchor(self) -> None:
        context = make_context(_four(), agent=_agent(PresetMessage(role="system", content="intro")))

        injection_assembler.assemble_context(context)

        assert texts(context.messages) == ["intro", "h0", "h1", "h2", "h3"]

    def test_anchor_injections_sorted_by_order(self) -> None:
        agent = _agent(
            PresetMessage(role="system", type="world_info", content="", id="wi"),
            PresetMessage(role="system", type="chat_history"),
            PresetMessage(
                role="system",
                content="after-2",
                injection=InjectionStrategy(anchor_target="world_info", order=2),
            ),
            PresetMessage(
                role="system",
                content="after-1",
                injection=InjectionStrategy(anchor_target="world_info", order=1),
            ),
            PresetMessage(
                role="system",
                content="before-history",
                injection=InjectionStrategy(anchor_target="chat_history", anchor_position="before"),
            ),
        )
        context = make_context(history(("user", "h0")), agent=agent)

        injection_assembler.assemble_context(context)

        assert texts(context.messages) == ["after-1", "after-2", "before-history", "h0"]
        assert {m.source_type for m in context.messages[:3]} == {"anchor_injection"}

    def test_anchor_with_content_is_emitted(self) -> None:
        agent = _agent(
            PresetMessage(role="system", type="persona", content="persona text"),
            PresetMessage(
                role="system",
                content="pre",
                injection=InjectionStrategy(anchor_target="persona", anchor_position="before"),
            ),
        )
        context = make_context([], agent=agent)

        injection_assembler.assemble_context(context)

        assert texts(context.messages) == ["pre", "persona text"]

    def test_orphaned_anchor_target_is_logged(self) -> None:
        agent = _agent(
            PresetMessage(role="system", content="lost", injection=InjectionStrategy(anchor_target="nowhere")),
        )
        context = make_context(history(("user", "h0")), agent=agent)

        injection_assembler.assemble_context(context)

        assert texts(context.messages) == ["h0"]
        warnings = [e for e in context.logs_for(injection_assembler.PROCESSOR_ID) if e.level == "warn"]
        assert warnings and "nowhere" in warnings[0].message

    def test_disabled_and_non_matching_presets_are_skipped(self) -> None:
        agent = _agent(
            PresetMessage(role="system", content="off", enabled=False),
            PresetMessage(role="system", content="claude only", model_patterns=("claude",)),
            PresetMessage(role="system", content="gpt only", model_patterns=("^gpt-4",)),
        )
        context = make_context(history(("user", "h0")), agent=agent)

        injection_assembler.assemble_context(context)

        assert texts(context.messages) == ["gpt only", "h0"]

    def test_no_active_presets_leaves_history_untouched(self) -> None:
        messages = history(("user", "h0"))
        context = make_context(messages, agent=_agent())

        injection_assembler.assemble_context(context)

        assert context.messages == messages

    def test_repeated_runs_insert_at_same_positions(self) -> None:
        agent = _agent(
            PresetMessage(role="system", content="main"),
            PresetMessage(role="system", content="X", injection=InjectionStrategy(depth_config="0~2")),
        )
        first = make_context(_four(), agent=agent)
        second = make_context(_four(), agent=agent)

        injection_assembler.assemble_context(first)
        injection_assembler.assemble_context(second)

        assert texts(first.messages) == texts(second.messages) == [
            "main", "X", "h0", "h1", "X", "h2", "h3", "X"
        ]


class TestModelPatterns:
    @pytest.mark.parametrize(
        ("model_id", "expected"),
        [
            ("openai:gpt-4o", True),
            ("openrouter:openai/gpt-4o-mini", True),
            ("GPT-4O", True),
            ("anthropic:claude-3", False),
            ("", False),
        ],
    )
    def test_matches_model(self, model_id: str, expected: bool) -> None:
        preset = PresetMessage(role="system", model_patterns=("^gpt-4",))

        assert preset.matches_model(model_id) is expected

    def test_invalid_pattern_never_matches(self, caplog: pytest.LogCaptureFixture) -> None:
        preset = PresetMessage(role="system", id="p", model_patterns=("(",))

        with caplog.at_level(logging.WARNING):
            assert preset.matches_model("gpt-4o") is False
        assert "invalid model pattern" in caplog.text
