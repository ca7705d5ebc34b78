"""Trim the history so the assembled request fits the context budget.

Runs after the regex processor, so sizes reflect the rewritten text, and
before the injection assembler. The preset messages the assembler will add
are reserved out of the budget up front, which keeps the final request
within budget without ever truncating agent-authored content.

Policy:

* the first ``preserve_head`` history messages are always kept intact;
* the rest are kept newest-first while they fit;
* the first message that does not fit may be shortened to
  ``retained_characters`` plus :data:`TRUNCATION_MARKER` when that fits;
* everything older is dropped.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, List, Sequence

from ...chat.message_model import ContentPart, MessageContent, full_text_of
from ..engine import ContextProcessor
from ..tokens import CharacterCounter, TokenCounterProtocol, estimate_message_tokens
from ..types import ContextLimitConfig, PipelineContext, PresetMessage, ProcessableMessage
from .injection_assembler import active_presets, classify_presets, injection_depths

LOGGER = logging.getLogger(__name__)

PROCESSOR_ID = "threadloom:token-limiter"
PRIORITY = 300
STATS_KEY = "token_limiter"
TRUNCATION_MARKER = "\n...(truncated)"

__all__ = [
    "PROCESSOR_ID",
    "PRIORITY",
    "STATS_KEY",
    "TRUNCATION_MARKER",
    "resolve_limit_config",
    "reserved_preset_size",
    "limit_messages",
    "create_processor",
]


def resolve_limit_config(context: PipelineContext) -> ContextLimitConfig | None:
    """Return the agent's limit config, falling back to the global settings."""

    if context.agent_config.context_limit is not None:
        return context.agent_config.context_limit
    if context.settings is not None:
        return context.settings.context_limit.to_config()
    return None


def reserved_preset_size(
    presets: Sequence[PresetMessage],
    model_id: str | None,
    history_length: int,
    counter: TokenCounterProtocol,
    *,
    unit: str,
) -> int:
    """Upper bound on the size the injection assembler will add.

    Depth injections count once per depth point they can produce for the
    current (untrimmed) history length.
    """

    active = active_presets(presets, model_id)
    classified = classify_presets(active)
    total = 0
    for preset in classified.skeleton + classified.anchor:
        if preset.is_anchor and not (preset.text or "").strip():
            continue
        total += estimate_message_tokens(preset, counter, unit=unit)
    for preset in classified.depth:
        copies = len(injection_depths(preset, history_length))
        total += copies * estimate_message_tokens(preset, counter, unit=unit)
    return total


def limit_messages(context: PipelineContext) -> None:
    config = resolve_limit_config(context)
    budget = context.budget if context.budget is not None else (config.max_tokens if config else None)
    if config is not None and not config.enabled and context.budget is None:
        context.log("info", "Context limiting disabled; skipped", processor_id=PROCESSOR_ID)
        return
    if budget is None:
        context.log("info", "No context budget configured; skipped", processor_id=PROCESSOR_ID)
        return
    config = config or ContextLimitConfig()

    unit = config.unit
    counter: TokenCounterProtocol = CharacterCounter() if unit == "characters" else context.token_counter
    messages = context.messages
    sizes = [estimate_message_tokens(message, counter, unit=unit) for message in messages]

    history_indices = [i for i, message in enumerate(messages) if message.source_type == "session_history"]
    other_size = sum(size for i, size in enumerate(sizes) if messages[i].source_type != "session_history")
    preset_size = 0
    if config.reserve_preset_tokens:
        preset_size = reserved_preset_size(
            context.agent_config.preset_messages,
            context.agent_config.model_id,
            len(history_indices),
            counter,
            unit=unit,
        )
    available = budget - other_size - preset_size

    head_indices = history_indices[: config.preserve_head]
    tail_indices = history_indices[config.preserve_head :]
    head_size = sum(sizes[i] for i in head_indices)

    replacements: Dict[int, ProcessableMessage] = {}
    kept: set[int] = set(head_indices)
    used = head_size
    partial = 0
    if head_size > available:
        context.log(
            "warn",
            f"Protected head ({head_size}) exceeds the available budget ({available}); "
            "only the head is kept",
            processor_id=PROCESSOR_ID,
            details={"budget": budget, "reserved": preset_size + other_size},
        )
    else:
        for index in reversed(tail_indices):
            size = sizes[index]
            if used + size <= available:
                kept.add(index)
                used += size
                continue
            shortened = _shorten(messages[index], config.retained_characters)
            if shortened is not None:
                short_size = estimate_message_tokens(shortened, counter, unit=unit)
                if used + short_size <= available:
                    kept.add(index)
                    replacements[index] = shortened
                    used += short_size
                    partial += 1
            break

    final: List[ProcessableMessage] = []
    for index, message in enumerate(messages):
        if message.source_type != "session_history":
            final.append(message)
        elif index in kept:
            final.append(replacements.get(index, message))
    context.messages = final

    original_history = sum(sizes[i] for i in history_indices)
    dropped = len(history_indices) - len(kept)
    stats: Dict[str, Any] = {
        "budget": budget,
        "unit": unit,
        "original_history_count": len(history_indices),
        "final_history_count": len(kept),
        "dropped_count": dropped,
        "partially_truncated_count": partial,
        "preset_tokens": preset_size + other_size,
        "history_tokens": used,
        "total_tokens": used + preset_size + other_size,
        "saved_tokens": original_history - used,
    }
    context.shared_data[STATS_KEY] = stats
    context.log(
        "info",
        f"Kept {len(kept)}/{len(history_indices)} history message(s) within budget {budget}",
        processor_id=PROCESSOR_ID,
        details=stats,
    )


def _shorten(message: ProcessableMessage, retained_characters: int) -> ProcessableMessage | None:
    text = full_text_of(message.content)
    if retained_characters <= 0 or text is None or len(text) <= retained_characters:
        return None
    shortened_text = text[:retained_characters] + TRUNCATION_MARKER
    content: MessageContent = shortened_text
    if not isinstance(message.content, str):
        content = _merge_text_parts(message.content, shortened_text)
    return dataclasses.replace(message, content=content, metadata={**message.metadata, "is_truncated": True})


def _merge_text_parts(parts: Sequence[ContentPart], text: str) -> MessageContent:
    """Replace all text parts with one part carrying ``text`` at the first text position."""

    merged: List[ContentPart] = []
    placed = False
    for part in parts:
        if part.type != "text":
            merged.append(part)
        elif not placed:
            merged.append(part.with_text(text))
            placed = True
    return tuple(merged)


def create_processor() -> ContextProcessor:
    return ContextProcessor(
        id=PROCESSOR_ID,
        name="Token limiter",
        priority=PRIORITY,
        execute=limit_messages,
        description="Drops and shortens older history so the request fits the context budget.",
    )
