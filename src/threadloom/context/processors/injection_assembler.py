"""Assemble agent preset messages around the (already limited) history.

Preset messages fall into three groups:

* skeleton entries (no injection strategy) are emitted in preset order; an
  entry whose ``type`` is ``chat_history`` marks where the history goes, and
  without one the history follows the skeleton;
* depth injections are spliced into the history counted from its end;
* anchor injections are placed before or after a named skeleton anchor.

Output is a pure function of the presets, the model id and the history, so
repeated runs insert at identical positions.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from ..engine import ContextProcessor
from ..types import (
    CHAT_HISTORY_ANCHOR,
    PipelineContext,
    PresetMessage,
    ProcessableMessage,
    SourceType,
)

LOGGER = logging.getLogger(__name__)

PROCESSOR_ID = "threadloom:injection-assembler"
PRIORITY = 400

_LOOP_SEGMENT = re.compile(r"(\d+)\s*[~:]\s*(\d+)")

__all__ = [
    "PROCESSOR_ID",
    "PRIORITY",
    "ClassifiedPresets",
    "active_presets",
    "classify_presets",
    "parse_depth_config",
    "injection_depths",
    "apply_depth_injections",
    "assemble_context",
    "create_processor",
]


@dataclass(slots=True)
class ClassifiedPresets:
    skeleton: List[PresetMessage] = field(default_factory=list)
    depth: List[PresetMessage] = field(default_factory=list)
    anchor: List[PresetMessage] = field(default_factory=list)


def active_presets(presets: Sequence[PresetMessage], model_id: str | None) -> List[PresetMessage]:
    """Return presets that are enabled and whose model patterns match ``model_id``."""

    return [preset for preset in presets if preset.is_active_for(model_id)]


def classify_presets(presets: Sequence[PresetMessage]) -> ClassifiedPresets:
    """Split presets into skeleton, depth and anchor groups; depth wins over anchor."""

    result = ClassifiedPresets()
    for preset in presets:
        strategy = preset.injection
        if strategy is None:
            result.skeleton.append(preset)
        elif strategy.is_depth:
            result.depth.append(preset)
        elif strategy.is_anchor:
            result.anchor.append(preset)
        else:
            result.skeleton.append(preset)
    return result


def parse_depth_config(config: str, history_length: int) -> List[int]:
    """Expand a depth configuration into concrete depths.

    Accepts single points (``"5"``), lists (``"3, 10"``) and loops
    (``"10~5"`` or ``"10:5"``: depth 10, then every 5 more). Depths beyond
    ``history_length`` are dropped; duplicates keep their first position.
    """

    depths: List[int] = []

    def _add(depth: int) -> None:
        if depth <= history_length and depth not in depths:
            depths.append(depth)

    for raw_segment in config.split(","):
        segment = raw_segment.strip()
        if not segment:
            continue
        loop = _LOOP_SEGMENT.fullmatch(segment)
        if loop is not None:
            start, interval = int(loop.group(1)), int(loop.group(2))
            if interval <= 0:
                _add(start)
                continue
            current = start
            while current <= history_length:
                _add(current)
                current += interval
            continue
        if segment.isdigit():
            _add(int(segment))
        else:
            LOGGER.debug("Ignoring malformed depth segment %r in %r", segment, config)
    return depths


def injection_depths(preset: PresetMessage, history_length: int) -> List[int]:
    """Return every depth ``preset`` is injected at for a history of ``history_length``."""

    strategy = preset.injection
    if strategy is None or not strategy.is_depth:
        return []
    if strategy.depth_config:
        return parse_depth_config(strategy.depth_config, history_length)
    return [max(0, int(strategy.depth or 0))]


def apply_depth_injections(
    history: Sequence[ProcessableMessage],
    injections: Sequence[PresetMessage],
    presets: Sequence[PresetMessage],
) -> List[ProcessableMessage]:
    """Return ``history`` with depth injections spliced in.

    Each depth group is ordered by ``order`` and inserted at
    ``max(0, len(result) - depth)``; deeper groups are inserted first.
    """

    result = list(history)
    if not injections:
        return result
    groups: Dict[int, List[PresetMessage]] = {}
    for preset in injections:
        depths = injection_depths(preset, len(history))
        if not depths:
            LOGGER.debug("Preset %s produced no depth points for %d message(s)", preset.id, len(history))
        for depth in depths:
            groups.setdefault(depth, []).append(preset)

    for depth in sorted(groups, reverse=True):
        group = sorted(groups[depth], key=_order)
        insert_at = max(0, len(result) - depth)
        result[insert_at:insert_at] = [_to_message(preset, presets, "depth_injection") for preset in group]
    return result


def assemble_context(context: PipelineContext) -> None:
    agent = context.agent_config
    presets = list(agent.preset_messages)
    active = active_presets(presets, agent.model_id)
    if not active:
        context.log("info", "Agent has no active preset messages; skipped", processor_id=PROCESSOR_ID)
        return

    classified = classify_presets(active)
    history_count = len(context.messages)
    history = apply_depth_injections(context.messages, classified.depth, presets)

    before: Dict[str, List[PresetMessage]] = {}
    after: Dict[str, List[PresetMessage]] = {}
    for preset in sorted(classified.anchor, key=_order):
        strategy = preset.injection
        if strategy is None or not strategy.anchor_target:
            continue
        bucket = before if strategy.anchor_position == "before" else after
        bucket.setdefault(strategy.anchor_target, []).append(preset)

    def _anchored(target: str, groups: Dict[str, List[PresetMessage]]) -> List[ProcessableMessage]:
        return [_to_message(preset, presets, "anchor_injection") for preset in groups.get(target, ())]

    used_anchors = {CHAT_HISTORY_ANCHOR}
    final: List[ProcessableMessage] = []
    history_placed = False
    for preset in classified.skeleton:
        if preset.type == CHAT_HISTORY_ANCHOR:
            if history_placed:
                LOGGER.warning("Agent %s declares more than one chat_history anchor", agent.id)
                continue
            final.extend(_anchored(CHAT_HISTORY_ANCHOR, before))
            final.extend(history)
            final.extend(_anchored(CHAT_HISTORY_ANCHOR, after))
            history_placed = True
        elif preset.is_anchor:
            used_anchors.add(preset.type)
            final.extend(_anchored(preset.type, before))
            if (preset.text or "").strip():
                final.append(_to_message(preset, presets, "agent_preset"))
            final.extend(_anchored(preset.type, after))
        else:
            final.append(_to_message(preset, presets, "agent_preset"))
    if not history_placed:
        final.extend(_anchored(CHAT_HISTORY_ANCHOR, before))
        final.extend(history)
        final.extend(_anchored(CHAT_HISTORY_ANCHOR, after))

    orphaned = sorted((set(before) | set(after)) - used_anchors)
    if orphaned:
        context.log(
            "warn",
            f"Anchor injections target unknown anchors: {', '.join(orphaned)}",
            processor_id=PROCESSOR_ID,
        )

    context.messages = final
    context.log(
        "info",
        f"Assembled {len(final)} message(s)",
        processor_id=PROCESSOR_ID,
        details={
            "skeleton": len(classified.skeleton),
            "depth_injections": len(classified.depth),
            "anchor_injections": len(classified.anchor),
            "history": history_count,
        },
    )


def _order(preset: PresetMessage) -> int:
    return preset.injection.order if preset.injection is not None else 100


def _to_message(
    preset: PresetMessage,
    presets: Sequence[PresetMessage],
    source_type: SourceType,
) -> ProcessableMessage:
    return ProcessableMessage(
        role=preset.role,
        content=preset.content,
        source_type=source_type,
        source_id=preset.id,
        source_index=presets.index(preset),
    )


def create_processor() -> ContextProcessor:
    return ContextProcessor(
        id=PROCESSOR_ID,
        name="Injection assembler",
        priority=PRIORITY,
        execute=assemble_context,
        description="Places agent preset messages around and inside the history.",
    )
