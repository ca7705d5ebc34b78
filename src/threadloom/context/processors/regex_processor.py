"""Apply the layered request-stage regex rules to the working message list."""

from __future__ import annotations

import logging
from typing import Sequence

from ..engine import ContextProcessor
from ..regex_rules import (
    RegexConfig,
    RegexRule,
    RegexRuleError,
    apply_rule,
    compile_rule,
    filter_rules_for_message,
    resolve_rules,
)
from ..types import PipelineContext

LOGGER = logging.getLogger(__name__)

PROCESSOR_ID = "threadloom:regex-processor"
PRIORITY = 200

__all__ = ["PROCESSOR_ID", "PRIORITY", "apply_request_rules", "collect_configs", "create_processor"]


def collect_configs(context: PipelineContext) -> list[RegexConfig | None]:
    """Return the global, agent and user configs in precedence order."""

    global_config = context.settings.regex_config if context.settings is not None else None
    user_config = context.user_profile.regex_config if context.user_profile is not None else None
    return [global_config, context.agent_config.regex_config, user_config]


def apply_request_rules(context: PipelineContext) -> None:
    rules = resolve_rules("request", *collect_configs(context))
    if not rules:
        context.log("debug", "No request-stage regex rules; skipped", processor_id=PROCESSOR_ID)
        return

    usable = _compilable(context, rules)
    total = len(context.messages)
    modified = 0
    failures = 0
    for index, message in enumerate(context.messages):
        original = message.text
        if original is None:
            continue
        depth = total - 1 - index
        text = original
        for rule in filter_rules_for_message(usable, message.role, depth):
            try:
                text = apply_rule(text, rule)
            except RegexRuleError as exc:
                failures += 1
                _log_rule_failure(context, exc, source_id=message.source_id)
        if text != original:
            message.with_text(text)
            modified += 1

    context.shared_data[PROCESSOR_ID] = {
        "rules": len(rules),
        "usable_rules": len(usable),
        "modified_messages": modified,
        "failures": failures,
    }
    context.log(
        "info",
        f"Applied {len(usable)} regex rule(s); {modified} message(s) changed",
        processor_id=PROCESSOR_ID,
    )


def _compilable(context: PipelineContext, rules: Sequence[RegexRule]) -> list[RegexRule]:
    usable: list[RegexRule] = []
    for rule in rules:
        try:
            compile_rule(rule)
        except RegexRuleError as exc:
            _log_rule_failure(context, exc)
            continue
        usable.append(rule)
    return usable


def _log_rule_failure(context: PipelineContext, exc: RegexRuleError, *, source_id: str | None = None) -> None:
    details = {"rule_id": exc.rule.id, "rule_name": exc.rule.name, "reason": exc.reason}
    if source_id is not None:
        details["source_id"] = source_id
    context.log("error", str(exc), processor_id=PROCESSOR_ID, details=details)


def create_processor() -> ContextProcessor:
    return ContextProcessor(
        id=PROCESSOR_ID,
        name="Regex processor",
        priority=PRIORITY,
        execute=apply_request_rules,
        description="Rewrites message text with the merged global, agent and user regex rules.",
    )
