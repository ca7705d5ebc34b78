"""Data types shared by the context pipeline and its processors."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Mapping, Optional

from ..chat.message_model import (
    ChatRole,
    ChatSession,
    MessageContent,
    content_from_payload,
    content_to_payload,
    text_of,
)
from .regex_rules import RegexConfig
from .tokens import ApproxByteCounter, CountUnit, TokenCounterProtocol

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from ..services.settings import Settings

LOGGER = logging.getLogger(__name__)

SourceType = Literal["session_history", "agent_preset", "depth_injection", "anchor_injection", "unknown"]
LogLevel = Literal["debug", "info", "warn", "error"]
AnchorPosition = Literal["before", "after"]

CHAT_HISTORY_ANCHOR = "chat_history"
MESSAGE_TYPE = "message"

_LOG_LEVELS: Mapping[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

__all__ = [
    "SourceType",
    "LogLevel",
    "AnchorPosition",
    "CHAT_HISTORY_ANCHOR",
    "MESSAGE_TYPE",
    "ProcessableMessage",
    "PipelineLogEntry",
    "InjectionStrategy",
    "PresetMessage",
    "ContextLimitConfig",
    "AgentConfig",
    "UserProfile",
    "PipelineContext",
]


# ---------------------------------------------------------------------------
# Messages flowing through the pipeline
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ProcessableMessage:
    """A message in the working list that processors rewrite."""

    role: ChatRole
    content: MessageContent
    source_type: SourceType = "unknown"
    source_id: str | None = None
    source_index: int | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str | None:
        return text_of(self.content)

    def with_text(self, new_text: str) -> None:
        """Replace the text carried by this message in place.

        Structured content keeps its other parts; only the first text part
        changes.
        """

        if isinstance(self.content, str):
            self.content = new_text
            return
        parts = list(self.content)
        for index, part in enumerate(parts):
            if part.type == "text" and isinstance(part.text, str):
                parts[index] = part.with_text(new_text)
                break
        self.content = tuple(parts)

    def as_payload(self) -> Dict[str, Any]:
        return {"role": self.role, "content": content_to_payload(self.content)}


@dataclass(slots=True, frozen=True)
class PipelineLogEntry:
    processor_id: str
    level: LogLevel
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processor_id": self.processor_id,
            "level": self.level,
            "message": self.message,
            "details": dict(self.details),
            "timestamp": self.timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# Agent and user configuration
# ---------------------------------------------------------------------------
@dataclass(slots=True, frozen=True)
class InjectionStrategy:
    """Where a preset message is placed relative to the history.

    ``depth``/``depth_config`` insert into the history counted from its end;
    ``anchor_target`` places the message before or after a named anchor.
    """

    depth: int | None = None
    depth_config: str | None = None
    anchor_target: str | None = None
    anchor_position: AnchorPosition = "after"
    order: int = 100

    @property
    def is_depth(self) -> bool:
        return self.depth is not None or bool(self.depth_config)

    @property
    def is_anchor(self) -> bool:
        return not self.is_depth and bool(self.anchor_target)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "depth": self.depth,
            "depth_config": self.depth_config,
            "anchor_target": self.anchor_target,
            "anchor_position": self.anchor_position,
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> InjectionStrategy:
        depth = payload.get("depth")
        order = payload.get("order")
        return cls(
            depth=int(depth) if depth is not None else None,
            depth_config=payload.get("depth_config") or None,
            anchor_target=payload.get("anchor_target") or None,
            anchor_position="before" if payload.get("anchor_position") == "before" else "after",
            order=int(order) if order is not None else 100,
        )


@dataclass(slots=True, frozen=True)
class PresetMessage:
    """A message authored as part of an agent's prompt preset.

    ``type`` is ``"message"`` for ordinary entries; any other value names an
    anchor (``"chat_history"`` marks where the history goes).
    """

    role: ChatRole
    content: MessageContent = ""
    id: str = field(default_factory=lambda: f"preset-{uuid.uuid4().hex[:12]}")
    name: str = ""
    enabled: bool = True
    type: str = MESSAGE_TYPE
    injection: InjectionStrategy | None = None
    model_patterns: tuple[str, ...] = ()

    @property
    def is_anchor(self) -> bool:
        return self.type != MESSAGE_TYPE

    @property
    def text(self) -> str | None:
        return text_of(self.content)

    def matches_model(self, model_id: str | None) -> bool:
        """Return True when no patterns are set or one matches ``model_id``.

        Patterns are case-insensitive searches against the id with any
        ``provider:`` prefix removed, then against the bare name after the
        last ``/``. Invalid patterns never match.
        """

        if not self.model_patterns:
            return True
        candidate = (model_id or "").split(":", 1)[-1]
        if not candidate:
            return False
        bare = candidate.rsplit("/", 1)[-1]
        for pattern in self.model_patterns:
            try:
                compiled = re.compile(pattern, re.IGNORECASE)
            except re.error:
                LOGGER.warning("Preset %s has an invalid model pattern %r", self.id, pattern)
                continue
            if compiled.search(candidate) or (bare and compiled.search(bare)):
                return True
        return False

    def is_active_for(self, model_id: str | None) -> bool:
        return self.enabled and self.matches_model(model_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "content": content_to_payload(self.content),
            "enabled": self.enabled,
            "type": self.type,
            "injection": self.injection.to_dict() if self.injection else None,
            "model_patterns": list(self.model_patterns),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PresetMessage:
        injection = payload.get("injection")
        kwargs: Dict[str, Any] = {}
        if payload.get("id"):
            kwargs["id"] = str(payload["id"])
        return cls(
            role=payload.get("role", "system"),
            content=content_from_payload(payload.get("content")),
            name=str(payload.get("name") or ""),
            enabled=bool(payload.get("enabled", True)),
            type=str(payload.get("type") or MESSAGE_TYPE),
            injection=InjectionStrategy.from_dict(injection) if injection else None,
            model_patterns=tuple(str(item) for item in payload.get("model_patterns") or ()),
            **kwargs,
        )


@dataclass(slots=True, frozen=True)
class ContextLimitConfig:
    """Budget for the history portion of a request."""

    enabled: bool = True
    max_tokens: int | None = None
    preserve_head: int = 0
    retained_characters: int = 0
    unit: CountUnit = "tokens"
    reserve_preset_tokens: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "max_tokens": self.max_tokens,
            "preserve_head": self.preserve_head,
            "retained_characters": self.retained_characters,
            "unit": self.unit,
            "reserve_preset_tokens": self.reserve_preset_tokens,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> ContextLimitConfig:
        if not payload:
            return cls()
        max_tokens = payload.get("max_tokens")
        return cls(
            enabled=bool(payload.get("enabled", True)),
            max_tokens=int(max_tokens) if max_tokens is not None else None,
            preserve_head=max(0, int(payload.get("preserve_head") or 0)),
            retained_characters=max(0, int(payload.get("retained_characters") or 0)),
            unit="characters" if payload.get("unit") == "characters" else "tokens",
            reserve_preset_tokens=bool(payload.get("reserve_preset_tokens", True)),
        )


@dataclass(slots=True, frozen=True)
class AgentConfig:
    id: str
    name: str = ""
    model_id: str = ""
    preset_messages: tuple[PresetMessage, ...] = ()
    regex_config: RegexConfig = field(default_factory=RegexConfig)
    context_limit: ContextLimitConfig | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "model_id": self.model_id,
            "preset_messages": [preset.to_dict() for preset in self.preset_messages],
            "regex_config": self.regex_config.to_dict(),
            "context_limit": self.context_limit.to_dict() if self.context_limit else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AgentConfig:
        limit = payload.get("context_limit")
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or ""),
            model_id=str(payload.get("model_id") or ""),
            preset_messages=tuple(PresetMessage.from_dict(item) for item in payload.get("preset_messages") or ()),
            regex_config=RegexConfig.from_dict(payload.get("regex_config")),
            context_limit=ContextLimitConfig.from_dict(limit) if limit else None,
        )


@dataclass(slots=True, frozen=True)
class UserProfile:
    id: str
    name: str = ""
    display_name: str = ""
    regex_config: RegexConfig = field(default_factory=RegexConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "regex_config": self.regex_config.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> UserProfile:
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or ""),
            display_name=str(payload.get("display_name") or ""),
            regex_config=RegexConfig.from_dict(payload.get("regex_config")),
        )


# ---------------------------------------------------------------------------
# Pipeline context
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class PipelineContext:
    """Mutable state passed through every stage of one pipeline run.

    Processors rewrite ``messages`` and append to ``logs``; the remaining
    fields are inputs. ``shared_data`` carries statistics between stages.
    """

    session: Optional[ChatSession]
    agent_config: AgentConfig
    user_profile: Optional[UserProfile] = None
    messages: List[ProcessableMessage] = field(default_factory=list)
    logs: List[PipelineLogEntry] = field(default_factory=list)
    settings: Optional["Settings"] = None
    shared_data: Dict[str, Any] = field(default_factory=dict)
    token_counter: TokenCounterProtocol = field(default_factory=ApproxByteCounter)
    budget: int | None = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def log(
        self,
        level: LogLevel,
        message: str,
        *,
        processor_id: str,
        details: Mapping[str, Any] | None = None,
    ) -> PipelineLogEntry:
        """Append a log entry and mirror it to the module logger."""

        entry = PipelineLogEntry(
            processor_id=processor_id,
            level=level,
            message=message,
            details=dict(details or {}),
        )
        self.logs.append(entry)
        LOGGER.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s: %s", self.run_id, processor_id, message)
        return entry

    def logs_for(self, processor_id: str) -> List[PipelineLogEntry]:
        return [entry for entry in self.logs if entry.processor_id == processor_id]
