"""Tests for loading and validating configuration documents."""

from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest

from threadloom.chat.message_model import ChatSession
from threadloom.services.config_loader import (
    AGENT_SCHEMA,
    ConfigValidationError,
    load_agent_config,
    load_document,
    load_regex_config,
    load_session,
    load_user_profile,
    validate_document,
)


def _write(path: Path, body: str) -> Path:
    path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
    return path


def test_agent_yaml_is_converted(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "agent.yaml",
        """
        id: narrator
        name: Narrator
        model_id: openai:gpt-4o
        context_limit:
          max_tokens: 4000
          preserve_head: 1
        preset_messages:
          - id: main
            role: system
            content: You are the narrator.
          - role: system
            type: chat_history
          - role: system
            content: Remember the rules.
            injection:
              depth_config: "2, 6"
              order: 5
        regex_config:
          presets:
            - name: cleanup
              rules:
                - regex: /\\s+$/g
                  replacement: ""
        """,
    )

    agent = load_agent_config(path)

    assert agent.id == "narrator"
    assert agent.context_limit is not None and agent.context_limit.preserve_head == 1
    assert [preset.type for preset in agent.preset_messages] == ["message", "chat_history", "message"]
    injection = agent.preset_messages[2].injection
    assert injection is not None and injection.depth_config == "2, 6" and injection.order == 5
    assert agent.regex_config.presets[0].rules[0].regex == r"/\s+$/g"


def test_schema_errors_are_collected_with_paths(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "agent.yaml",
        """
        name: missing id
        preset_messages:
          - role: narrator
        """,
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_agent_config(path)

    errors = excinfo.value.errors
    assert excinfo.value.source == str(path)
    assert any("'id' is a required property" in error for error in errors)
    assert any(error.startswith("preset_messages[0].role") for error in errors)


def test_duplicate_yaml_keys_are_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path / "agent.yml", "id: a\nid: b\n")

    with pytest.raises(ConfigValidationError):
        load_document(path)


def test_duplicate_json_keys_are_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path / "agent.json", '{"id": "a", "id": "b"}')

    with pytest.raises(ConfigValidationError) as excinfo:
        load_document(path)

    assert "Duplicate key 'id'" in excinfo.value.errors[0]


def test_invalid_json_reports_position(tmp_path: Path) -> None:
    path = _write(tmp_path / "broken.json", '{"id": }')

    with pytest.raises(ConfigValidationError) as excinfo:
        load_document(path)

    assert "line 1" in excinfo.value.errors[0]


def test_unreadable_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        load_document(tmp_path / "missing.yaml")

    assert "cannot read file" in excinfo.value.errors[0]


def test_validate_document_caps_error_count() -> None:
    document = {"id": "a", "preset_messages": [{"role": "bad"} for _ in range(40)]}

    with pytest.raises(ConfigValidationError) as excinfo:
        validate_document(document, AGENT_SCHEMA)

    assert len(excinfo.value.errors) == 26
    assert excinfo.value.errors[-1].startswith("Too many validation errors")


def test_user_profile(tmp_path: Path) -> None:
    path = _write(tmp_path / "profile.yaml", "id: u1\ndisplay_name: Sam\n")

    profile = load_user_profile(path)

    assert (profile.id, profile.display_name) == ("u1", "Sam")


def test_regex_config_file(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "regex.json",
        json.dumps({"presets": [{"name": "p", "priority": 5, "rules": [{"regex": "a", "max_depth": 0}]}]}),
    )

    config = load_regex_config(path)

    (preset,) = config.presets
    assert preset.priority == 5
    assert preset.rules[0].max_depth == 0


def test_sillytavern_scripts_are_imported(tmp_path: Path) -> None:
    scripts = [
        {"scriptName": "one", "findRegex": "/a/g", "replaceString": "b", "placement": [2]},
        {"scriptName": "two", "findRegex": "c", "markdownOnly": True},
    ]
    path = _write(tmp_path / "st.json", json.dumps(scripts))

    config = load_regex_config(path)

    assert [preset.name for preset in config.presets] == ["one", "two"]
    assert config.presets[1].rules[0].apply_to_request is False


def test_session_round_trip_through_file(tmp_path: Path, hello_session: ChatSession) -> None:
    path = _write(tmp_path / "session.json", json.dumps(hello_session.to_dict()))

    session = load_session(path)

    assert session.to_dict() == hello_session.to_dict()


def test_session_nodes_may_be_a_list(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "session.yaml",
        """
        root_node_id: root
        active_leaf_id: a
        nodes:
          - {id: root, parent_id: null, role: system, content: ""}
          - {id: a, parent_id: root, role: user, content: hi}
        """,
    )

    session = load_session(path)

    assert session.nodes["root"].children_ids == ["a"]


def test_session_with_bad_role_is_rejected(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "session.json",
        json.dumps({"root_node_id": "r", "nodes": {"r": {"id": "r", "role": "narrator"}}}),
    )

    with pytest.raises(ConfigValidationError):
        load_session(path)
