"""Facade that turns a session plus configuration into model-ready messages."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Sequence

from ..chat.message_model import ChatSession
from .engine import CancelSignal, PipelineEngine
from .event_log import PipelineEventLogger
from .processors import default_processors
from .regex_rules import apply_rules, filter_rules_for_message, resolve_rules
from .tokens import TokenCounterProtocol, TokenCounterRegistry
from .types import AgentConfig, PipelineContext, PipelineLogEntry, ProcessableMessage, UserProfile

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from ..services.settings import Settings

LOGGER = logging.getLogger(__name__)

__all__ = ["ContextBuilder", "ContextResult", "messages_payload", "render_text"]


def messages_payload(messages: Sequence[ProcessableMessage]) -> List[Dict[str, Any]]:
    """Return ``[{"role", "content"}]`` dicts ready for a chat completion call."""

    return [message.as_payload() for message in messages]


@dataclass(slots=True)
class ContextResult:
    messages: List[ProcessableMessage] = field(default_factory=list)
    logs: List[PipelineLogEntry] = field(default_factory=list)
    shared_data: Dict[str, Any] = field(default_factory=dict)
    run_id: str = ""

    @property
    def warnings(self) -> List[PipelineLogEntry]:
        return [entry for entry in self.logs if entry.level in ("warn", "error")]

    def payload(self) -> List[Dict[str, Any]]:
        return messages_payload(self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "messages": self.payload(),
            "logs": [entry.to_dict() for entry in self.logs],
            "shared_data": dict(self.shared_data),
        }


class ContextBuilder:
    """Runs the context pipeline for one session at a time.

    The builder holds no per-build state, so one instance may serve many
    sessions concurrently. Callers must not mutate a session's tree while a
    build for that session is in flight.
    """

    def __init__(
        self,
        engine: PipelineEngine | None = None,
        settings: Settings | None = None,
        token_counter: TokenCounterProtocol | None = None,
        *,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._token_counter = token_counter
        self._registry = token_registry or TokenCounterRegistry.global_instance()
        if engine is None:
            event_logger = None
            if settings is not None and settings.debug_event_logging:
                event_logger = PipelineEventLogger(enabled=True, base_dir=settings.event_log_dir)
            engine = PipelineEngine(default_processors(), event_logger=event_logger)
        self._engine = engine

    @property
    def engine(self) -> PipelineEngine:
        return self._engine

    @property
    def settings(self) -> Settings | None:
        return self._settings

    def counter_for(self, agent_config: AgentConfig) -> TokenCounterProtocol:
        if self._token_counter is not None:
            return self._token_counter
        if self._settings is not None and self._settings.token_counter == "approx":
            return self._registry.get(None)
        model = agent_config.model_id or (self._settings.default_model if self._settings else None)
        return self._registry.ensure(model)

    async def build(
        self,
        session: ChatSession | None,
        agent_config: AgentConfig,
        user_profile: UserProfile | None = None,
        *,
        budget: int | None = None,
        cancel_event: CancelSignal | None = None,
    ) -> ContextResult:
        context = PipelineContext(
            session=session,
            agent_config=agent_config,
            user_profile=user_profile,
            settings=self._settings,
            token_counter=self.counter_for(agent_config),
            budget=budget,
        )
        LOGGER.debug(
            "Building context run=%s session=%s agent=%s budget=%s",
            context.run_id,
            session.id if session is not None else None,
            agent_config.id,
            budget,
        )
        await self._engine.execute(context, cancel=cancel_event)
        return ContextResult(
            messages=context.messages,
            logs=context.logs,
            shared_data=context.shared_data,
            run_id=context.run_id,
        )

    def build_sync(
        self,
        session: ChatSession | None,
        agent_config: AgentConfig,
        user_profile: UserProfile | None = None,
        *,
        budget: int | None = None,
    ) -> ContextResult:
        """Blocking wrapper around :meth:`build` for scripts and the CLI."""

        return asyncio.run(self.build(session, agent_config, user_profile, budget=budget))


def render_text(
    text: str,
    *,
    role: str,
    depth: int,
    agent_config: AgentConfig,
    user_profile: UserProfile | None = None,
    settings: Settings | None = None,
) -> str:
    """Apply render-stage regex rules to one message's display text.

    Failing rules are logged and skipped.
    """

    rules = resolve_rules(
        "render",
        settings.regex_config if settings is not None else None,
        agent_config.regex_config,
        user_profile.regex_config if user_profile is not None else None,
    )
    result, _ = apply_rules(text, filter_rules_for_message(rules, role, depth))
    return result
