"""Test helpers shared across modules."""

from __future__ import annotations

from typing import Iterable, Sequence

from threadloom.chat.message_model import ChatRole, ChatSession
from threadloom.context.types import AgentConfig, PipelineContext, ProcessableMessage


class WordCounter:
    """Deterministic counter: one token per whitespace-separated word."""

    model_name: str | None = "word-counter"

    def count(self, text: str) -> int:
        return len((text or "").split())

    def estimate(self, text: str) -> int:
        return self.count(text)


def history(*turns: tuple[ChatRole, str]) -> list[ProcessableMessage]:
    return [
        ProcessableMessage(role=role, content=text, source_type="session_history", source_id=f"n{index}")
        for index, (role, text) in enumerate(turns)
    ]


def make_context(
    messages: Iterable[ProcessableMessage] = (),
    *,
    agent: AgentConfig | None = None,
    session: ChatSession | None = None,
    **kwargs,
) -> PipelineContext:
    return PipelineContext(
        session=session,
        agent_config=agent or AgentConfig(id="agent-test"),
        messages=list(messages),
        **kwargs,
    )


def texts(messages: Sequence[ProcessableMessage]) -> list[str | None]:
    return [message.text for message in messages]
