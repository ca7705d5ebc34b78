"""Regex rule models, layered rule resolution, and rule application.

Rule sets come from up to three layers (global settings, the agent, the user
profile). Resolution is a precedence merge: enabled presets are concatenated
layer by layer and their enabled rules are stably sorted by
``(preset.priority, rule.order)``, so ties keep the global < agent < user
order.

Patterns use the JavaScript-flavoured syntax common in shared chat presets
(``/pattern/flags``, ``$1`` replacements); they are translated to :mod:`re`
at compile time.
"""

from __future__ import annotations

import functools
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping, Sequence

LOGGER = logging.getLogger(__name__)

RuleStage = Literal["request", "render"]

_DEFAULT_FLAGS = "gm"
_SLASH_PATTERN = re.compile(r"/(.+?)/([gimsuvy]*)", re.DOTALL)
_FLAG_MAP: Mapping[str, int] = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
_IGNORED_FLAGS = frozenset({"u", "v", "y"})
_NAMED_GROUP = re.compile(r"\(\?<(?![=!])")
_NAMED_BACKREF = re.compile(r"\\k<([A-Za-z_][A-Za-z0-9_]*)>")
_REPLACEMENT_TOKEN = re.compile(r"\$(\$|&|`|'|\{(\d+)\}|<([A-Za-z_][A-Za-z0-9_]*)>|(\d{1,2}))")

__all__ = [
    "RuleStage",
    "RegexRule",
    "RegexPreset",
    "RegexConfig",
    "RegexRuleError",
    "CompiledRule",
    "resolve_rules",
    "filter_rules_for_message",
    "parse_regex_string",
    "compile_rule",
    "apply_rule",
    "apply_rules",
    "convert_from_sillytavern",
]


class RegexRuleError(ValueError):
    """Raised when a single rule cannot be compiled or applied."""

    def __init__(self, rule: RegexRule, reason: str) -> None:
        super().__init__(f"Regex rule {rule.label} failed: {reason}")
        self.rule = rule
        self.reason = reason


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class RegexRule:
    """One find/replace rule with optional role and depth filters.

    Attributes:
        regex: Pattern text, optionally in ``/pattern/flags`` form.
        replacement: Replacement text using ``$1``/``$&``/``$<name>`` tokens.
        flags: Explicit flags; overrides flags embedded in ``regex``.
        target_roles: Roles the rule applies to; empty means every role.
        min_depth: Smallest depth (0 = newest message) the rule touches.
        max_depth: Largest depth the rule touches.
        trim_strings: Substrings stripped from captured groups before
            substitution.
    """

    regex: str
    replacement: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    flags: str | None = None
    target_roles: tuple[str, ...] = ()
    min_depth: int | None = None
    max_depth: int | None = None
    order: int = 0
    enabled: bool = True
    apply_to_request: bool = True
    apply_to_render: bool = True
    trim_strings: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return f"{self.name!r} ({self.id})" if self.name else repr(self.id)

    def applies_to_stage(self, stage: RuleStage) -> bool:
        return self.apply_to_request if stage == "request" else self.apply_to_render

    def matches_role(self, role: str) -> bool:
        return not self.target_roles or role in self.target_roles

    def matches_depth(self, depth: int) -> bool:
        if self.min_depth is not None and depth < self.min_depth:
            return False
        if self.max_depth is not None and depth > self.max_depth:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "regex": self.regex,
            "replacement": self.replacement,
            "flags": self.flags,
            "target_roles": list(self.target_roles),
            "min_depth": self.min_depth,
            "max_depth": self.max_depth,
            "order": self.order,
            "enabled": self.enabled,
            "apply_to_request": self.apply_to_request,
            "apply_to_render": self.apply_to_render,
            "trim_strings": list(self.trim_strings),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RegexRule:
        depth_range = payload.get("depth_range") or {}
        apply_to = payload.get("apply_to") or {}
        return cls(
            id=str(payload.get("id") or uuid.uuid4().hex),
            name=str(payload.get("name") or ""),
            regex=str(payload.get("regex", "")),
            replacement=str(payload.get("replacement") or ""),
            flags=payload.get("flags"),
            target_roles=tuple(payload.get("target_roles") or ()),
            min_depth=_optional_int(payload.get("min_depth", depth_range.get("min"))),
            max_depth=_optional_int(payload.get("max_depth", depth_range.get("max"))),
            order=int(payload.get("order") or 0),
            enabled=bool(payload.get("enabled", True)),
            apply_to_request=bool(payload.get("apply_to_request", apply_to.get("request", True))),
            apply_to_render=bool(payload.get("apply_to_render", apply_to.get("render", True))),
            trim_strings=tuple(str(item) for item in payload.get("trim_strings") or () if item),
        )


@dataclass(slots=True, frozen=True)
class RegexPreset:
    """A named, orderable group of rules."""

    name: str = ""
    rules: tuple[RegexRule, ...] = ()
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enabled: bool = True
    order: int = 0
    priority: int = 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "order": self.order,
            "priority": self.priority,
            "rules": [rule.to_dict() for rule in self.rules],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RegexPreset:
        return cls(
            id=str(payload.get("id") or uuid.uuid4().hex),
            name=str(payload.get("name") or ""),
            enabled=bool(payload.get("enabled", True)),
            order=int(payload.get("order") or 0),
            priority=int(payload.get("priority", 100)),
            rules=tuple(RegexRule.from_dict(rule) for rule in payload.get("rules") or ()),
        )


@dataclass(slots=True, frozen=True)
class RegexConfig:
    """One layer of regex configuration (global, agent, or user)."""

    presets: tuple[RegexPreset, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"presets": [preset.to_dict() for preset in self.presets]}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> RegexConfig:
        if not payload:
            return cls()
        return cls(presets=tuple(RegexPreset.from_dict(item) for item in payload.get("presets") or ()))


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------
def resolve_rules(stage: RuleStage, *configs: RegexConfig | None) -> list[RegexRule]:
    """Merge the layered configs into one ordered rule list for ``stage``.

    Role and depth are not considered here; see
    :func:`filter_rules_for_message`.
    """

    weighted: list[tuple[int, int, RegexRule]] = []
    for config in configs:
        if config is None:
            continue
        presets = sorted((preset for preset in config.presets if preset.enabled), key=lambda p: p.order)
        for preset in presets:
            for rule in preset.rules:
                if rule.enabled and rule.applies_to_stage(stage):
                    weighted.append((preset.priority, rule.order, rule))
    weighted.sort(key=lambda entry: (entry[0], entry[1]))
    return [rule for _, _, rule in weighted]


def filter_rules_for_message(rules: Iterable[RegexRule], role: str, depth: int) -> list[RegexRule]:
    return [rule for rule in rules if rule.matches_role(role) and rule.matches_depth(depth)]


# ---------------------------------------------------------------------------
# Compilation and application
# ---------------------------------------------------------------------------
def parse_regex_string(raw: str) -> tuple[str, str]:
    """Split ``/pattern/flags`` into its parts.

    Bare patterns return the default ``gm`` flags. A slash form without
    ``g`` gets it added, matching how shared presets behave.
    """

    match = _SLASH_PATTERN.fullmatch(raw)
    if match is None:
        return raw, _DEFAULT_FLAGS
    pattern, flags = match.group(1), match.group(2)
    if "g" not in flags:
        flags = f"{flags}g"
    return pattern, flags


@dataclass(slots=True, frozen=True)
class CompiledRule:
    pattern: re.Pattern[str]
    replace_all: bool


def compile_rule(rule: RegexRule) -> CompiledRule:
    """Compile ``rule`` into a :class:`re.Pattern`, raising :class:`RegexRuleError`."""

    pattern_text, parsed_flags = parse_regex_string(rule.regex)
    flags = rule.flags or parsed_flags or _DEFAULT_FLAGS
    try:
        return _compile(pattern_text, flags)
    except (re.error, ValueError) as exc:
        raise RegexRuleError(rule, str(exc)) from exc


@functools.lru_cache(maxsize=256)
def _compile(pattern_text: str, flags: str) -> CompiledRule:
    if not pattern_text:
        raise ValueError("empty pattern")
    re_flags = 0
    for flag in flags:
        if flag == "g":
            continue
        if flag in _FLAG_MAP:
            re_flags |= _FLAG_MAP[flag]
        elif flag not in _IGNORED_FLAGS:
            raise ValueError(f"unsupported flag {flag!r}")
    translated = _NAMED_BACKREF.sub(r"(?P=\1)", _NAMED_GROUP.sub("(?P<", pattern_text))
    return CompiledRule(pattern=re.compile(translated, re_flags), replace_all="g" in flags)


def apply_rule(text: str, rule: RegexRule) -> str:
    """Return ``text`` with ``rule`` applied, raising :class:`RegexRuleError` on failure."""

    compiled = compile_rule(rule)
    trim = rule.trim_strings

    def _substitute(match: re.Match[str]) -> str:
        return _expand_replacement(rule.replacement, match, trim)

    try:
        return compiled.pattern.sub(_substitute, text, count=0 if compiled.replace_all else 1)
    except (re.error, IndexError, RecursionError) as exc:
        raise RegexRuleError(rule, str(exc)) from exc


def apply_rules(text: str, rules: Sequence[RegexRule]) -> tuple[str, list[RegexRuleError]]:
    """Apply ``rules`` in order; failing rules are skipped and reported."""

    errors: list[RegexRuleError] = []
    result = text
    for rule in rules:
        try:
            result = apply_rule(result, rule)
        except RegexRuleError as exc:
            LOGGER.warning("%s", exc)
            errors.append(exc)
    return result, errors


def _expand_replacement(template: str, match: re.Match[str], trim: Sequence[str]) -> str:
    group_count = len(match.groups())

    def _group(index: int) -> str:
        value = match.group(index) or ""
        for needle in trim:
            value = value.replace(needle, "")
        return value

    def _token(token: re.Match[str]) -> str:
        body = token.group(1)
        if body == "$":
            return "$"
        if body == "&":
            return match.group(0)
        if body == "`":
            return match.string[: match.start()]
        if body == "'":
            return match.string[match.end() :]
        if token.group(2) is not None:
            index = int(token.group(2))
            return _group(index) if 0 < index <= group_count else token.group(0)
        if token.group(3) is not None:
            name = token.group(3)
            if name in match.re.groupindex:
                return _group(match.re.groupindex[name])
            return token.group(0)
        digits = token.group(4)
        index = int(digits)
        if 0 < index <= group_count:
            return _group(index)
        if len(digits) == 2 and 0 < int(digits[0]) <= group_count:
            return _group(int(digits[0])) + digits[1]
        return token.group(0)

    return _REPLACEMENT_TOKEN.sub(_token, template)


# ---------------------------------------------------------------------------
# SillyTavern import
# ---------------------------------------------------------------------------
def convert_from_sillytavern(script: Mapping[str, Any]) -> RegexPreset:
    """Convert a SillyTavern ``RegexScript`` payload into a :class:`RegexPreset`."""

    placement = set(script.get("placement") or ())
    render = 1 in placement
    request = 2 in placement
    if script.get("markdownOnly"):
        render, request = True, False
    if script.get("promptOnly"):
        render, request = False, True
    if not render and not request:
        render = request = True

    rules: tuple[RegexRule, ...] = ()
    find_regex = script.get("findRegex")
    if find_regex:
        rules = (
            RegexRule(
                name="main",
                regex=str(find_regex),
                replacement=str(script.get("replaceString") or ""),
                flags=None,
                target_roles=("system", "user", "assistant"),
                min_depth=_optional_int(script.get("minDepth")),
                max_depth=_optional_int(script.get("maxDepth")),
                apply_to_request=request,
                apply_to_render=render,
                trim_strings=tuple(str(item) for item in script.get("trimStrings") or () if item),
            ),
        )
    return RegexPreset(
        id=str(script.get("id") or uuid.uuid4().hex),
        name=str(script.get("scriptName") or "Imported preset"),
        enabled=not bool(script.get("disabled", False)),
        rules=rules,
    )


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)
