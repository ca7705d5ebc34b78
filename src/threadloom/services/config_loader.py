"""Load agent configs, user profiles, regex presets and sessions from disk.

YAML files are parsed with ruamel's safe loader (duplicate keys rejected),
JSON files with a duplicate-key-rejecting hook. Every document is validated
against a JSON Schema (Draft 2020-12) before conversion to dataclasses.
"""

from __future__ import annotations

import json
import logging
from json import JSONDecodeError
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import jsonschema
from ruamel.yaml import YAML
from ruamel.yaml.error import MarkedYAMLError, YAMLError

from ..chat.message_model import ChatSession
from ..context.regex_rules import RegexConfig, convert_from_sillytavern
from ..context.types import AgentConfig, UserProfile

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 25
_YAML_SUFFIXES = frozenset({".yaml", ".yml"})

__all__ = [
    "AGENT_SCHEMA",
    "PROFILE_SCHEMA",
    "REGEX_CONFIG_SCHEMA",
    "SESSION_SCHEMA",
    "ConfigValidationError",
    "load_document",
    "validate_document",
    "load_agent_config",
    "load_user_profile",
    "load_regex_config",
    "load_session",
]


class ConfigValidationError(ValueError):
    """Raised when a configuration document cannot be parsed or fails its schema."""

    def __init__(self, source: str, errors: Sequence[str]) -> None:
        self.source = source
        self.errors = list(errors)
        summary = "; ".join(self.errors[:3])
        if len(self.errors) > 3:
            summary += f" (+{len(self.errors) - 3} more)"
        super().__init__(f"Invalid configuration in {source}: {summary}")


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------
_ROLE = {"type": "string", "enum": ["user", "assistant", "system"]}
_CONTENT = {"anyOf": [{"type": "string"}, {"type": "array", "items": {"type": "object"}}]}

_REGEX_RULE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["regex"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "regex": {"type": "string", "minLength": 1},
        "replacement": {"type": ["string", "null"]},
        "flags": {"type": ["string", "null"], "pattern": "^[gimsuvy]*$"},
        "target_roles": {"type": "array", "items": _ROLE},
        "min_depth": {"type": ["integer", "null"], "minimum": 0},
        "max_depth": {"type": ["integer", "null"], "minimum": 0},
        "order": {"type": "integer"},
        "enabled": {"type": "boolean"},
        "apply_to_request": {"type": "boolean"},
        "apply_to_render": {"type": "boolean"},
        "trim_strings": {"type": "array", "items": {"type": "string"}},
    },
}

REGEX_CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "presets": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "name": {"type": "string"},
                    "enabled": {"type": "boolean"},
                    "order": {"type": "integer"},
                    "priority": {"type": "integer"},
                    "rules": {"type": "array", "items": _REGEX_RULE_SCHEMA},
                },
            },
        }
    },
}

_CONTEXT_LIMIT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "enabled": {"type": "boolean"},
        "max_tokens": {"type": ["integer", "null"], "minimum": 0},
        "preserve_head": {"type": "integer", "minimum": 0},
        "retained_characters": {"type": "integer", "minimum": 0},
        "unit": {"type": "string", "enum": ["tokens", "characters"]},
        "reserve_preset_tokens": {"type": "boolean"},
    },
}

_PRESET_MESSAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["role"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "role": _ROLE,
        "content": _CONTENT,
        "enabled": {"type": "boolean"},
        "type": {"type": "string"},
        "model_patterns": {"type": "array", "items": {"type": "string"}},
        "injection": {
            "type": ["object", "null"],
            "properties": {
                "depth": {"type": ["integer", "null"], "minimum": 0},
                "depth_config": {"type": ["string", "null"], "pattern": r"^[\d\s,~:]*$"},
                "anchor_target": {"type": ["string", "null"]},
                "anchor_position": {"type": "string", "enum": ["before", "after"]},
                "order": {"type": "integer"},
            },
        },
    },
}

AGENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "model_id": {"type": "string"},
        "preset_messages": {"type": "array", "items": _PRESET_MESSAGE_SCHEMA},
        "regex_config": REGEX_CONFIG_SCHEMA,
        "context_limit": {"anyOf": [_CONTEXT_LIMIT_SCHEMA, {"type": "null"}]},
    },
}

PROFILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "display_name": {"type": "string"},
        "regex_config": REGEX_CONFIG_SCHEMA,
    },
}

SESSION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["root_node_id", "nodes"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "root_node_id": {"type": "string"},
        "active_leaf_id": {"type": "string"},
        "nodes": {
            "type": ["object", "array"],
            "additionalProperties": {"$ref": "#/$defs/node"},
            "items": {"$ref": "#/$defs/node"},
        },
    },
    "$defs": {
        "node": {
            "type": "object",
            "required": ["id", "role"],
            "properties": {
                "id": {"type": "string"},
                "parent_id": {"type": ["string", "null"]},
                "role": _ROLE,
                "content": {"anyOf": [_CONTENT, {"type": "null"}]},
                "enabled": {"type": "boolean"},
                "children_ids": {"type": "array", "items": {"type": "string"}},
                "metadata": {"type": "object"},
            },
        }
    },
}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def _create_yaml_parser() -> YAML:
    parser = YAML(typ="safe")
    parser.allow_duplicate_keys = False
    return parser


class DuplicateJSONKeyError(ValueError):
    """Raised when a duplicate key is encountered during JSON parsing."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Duplicate key '{key}' found in JSON object.")
        self.key = key


def _no_duplicate_keys(pairs: Iterable[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise DuplicateJSONKeyError(key)
        result[key] = value
    return result


def load_document(path: Path | str) -> Any:
    """Parse ``path`` as YAML or JSON (by suffix), raising :class:`ConfigValidationError`."""

    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigValidationError(str(source), [f"cannot read file: {exc}"]) from exc

    if source.suffix.lower() in _YAML_SUFFIXES:
        try:
            return _create_yaml_parser().load(text)
        except MarkedYAMLError as exc:
            mark = exc.problem_mark or exc.context_mark
            line = f" (line {mark.line + 1})" if mark is not None else ""
            raise ConfigValidationError(str(source), [f"{exc.problem or exc}{line}"]) from exc
        except YAMLError as exc:
            raise ConfigValidationError(str(source), [str(exc)]) from exc

    try:
        return json.loads(text, object_pairs_hook=_no_duplicate_keys)
    except DuplicateJSONKeyError as exc:
        raise ConfigValidationError(str(source), [str(exc)]) from exc
    except JSONDecodeError as exc:
        message = f"{exc.msg} (line {exc.lineno}, column {exc.colno})"
        raise ConfigValidationError(str(source), [message]) from exc


def validate_document(document: Any, schema: Mapping[str, Any], *, source: str = "<document>") -> None:
    """Validate ``document`` against ``schema``, collecting up to :data:`MAX_SCHEMA_ERRORS` issues."""

    validator = jsonschema.Draft202012Validator(schema)
    errors: list[str] = []
    for issue in sorted(validator.iter_errors(document), key=lambda item: list(item.absolute_path)):
        path = _format_schema_path(issue.absolute_path)
        errors.append(f"{path}: {issue.message}" if path else issue.message)
        if len(errors) >= MAX_SCHEMA_ERRORS:
            errors.append("Too many validation errors; stopping early.")
            break
    if errors:
        raise ConfigValidationError(source, errors)


def _format_schema_path(path: Sequence[Any]) -> str:
    components: list[str] = []
    for segment in path:
        if isinstance(segment, int):
            if components:
                components[-1] = f"{components[-1]}[{segment}]"
            else:
                components.append(f"[{segment}]")
        else:
            components.append(str(segment))
    return ".".join(filter(None, components))


# ---------------------------------------------------------------------------
# Typed loaders
# ---------------------------------------------------------------------------
def load_agent_config(path: Path | str) -> AgentConfig:
    document = load_document(path)
    validate_document(document, AGENT_SCHEMA, source=str(path))
    agent = AgentConfig.from_dict(document)
    LOGGER.debug("Loaded agent %s with %d preset message(s)", agent.id, len(agent.preset_messages))
    return agent


def load_user_profile(path: Path | str) -> UserProfile:
    document = load_document(path)
    validate_document(document, PROFILE_SCHEMA, source=str(path))
    return UserProfile.from_dict(document)


def load_regex_config(path: Path | str) -> RegexConfig:
    """Load a regex config; SillyTavern script exports (one or a list) are converted."""

    document = load_document(path)
    scripts = _sillytavern_scripts(document)
    if scripts is not None:
        LOGGER.info("Importing %d SillyTavern regex script(s) from %s", len(scripts), path)
        return RegexConfig(presets=tuple(convert_from_sillytavern(script) for script in scripts))
    validate_document(document, REGEX_CONFIG_SCHEMA, source=str(path))
    return RegexConfig.from_dict(document)


def load_session(path: Path | str) -> ChatSession:
    document = load_document(path)
    validate_document(document, SESSION_SCHEMA, source=str(path))
    try:
        return ChatSession.from_dict(document)
    except (TypeError, ValueError, KeyError) as exc:
        raise ConfigValidationError(str(path), [str(exc)]) from exc


def _sillytavern_scripts(document: Any) -> list[Mapping[str, Any]] | None:
    if isinstance(document, Mapping) and "findRegex" in document:
        return [document]
    if isinstance(document, list) and document and all(
        isinstance(item, Mapping) and "findRegex" in item for item in document
    ):
        return list(document)
    return None
