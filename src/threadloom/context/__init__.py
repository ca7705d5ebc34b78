"""Context pipeline: engine, processors, and the builder facade."""

from .builder import ContextBuilder, ContextResult, messages_payload, render_text
from .engine import ContextProcessor, PipelineAbort, PipelineEngine
from .event_log import PipelineEventLogger, PipelineEventLogRun
from .processors import default_processors
from .regex_rules import RegexConfig, RegexPreset, RegexRule, RegexRuleError, resolve_rules
from .tokens import ApproxByteCounter, CharacterCounter, TiktokenCounter, TokenCounterRegistry
from .types import (
    AgentConfig,
    ContextLimitConfig,
    InjectionStrategy,
    PipelineContext,
    PipelineLogEntry,
    PresetMessage,
    ProcessableMessage,
    UserProfile,
)

__all__ = [
    "AgentConfig",
    "ApproxByteCounter",
    "CharacterCounter",
    "ContextBuilder",
    "ContextLimitConfig",
    "ContextProcessor",
    "ContextResult",
    "InjectionStrategy",
    "PipelineAbort",
    "PipelineContext",
    "PipelineEngine",
    "PipelineEventLogRun",
    "PipelineEventLogger",
    "PipelineLogEntry",
    "PresetMessage",
    "ProcessableMessage",
    "RegexConfig",
    "RegexPreset",
    "RegexRule",
    "RegexRuleError",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "UserProfile",
    "default_processors",
    "messages_payload",
    "render_text",
    "resolve_rules",
]
