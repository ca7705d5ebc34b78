"""Priority-ordered execution of context processors.

The engine owns the processor registry and runs one :class:`PipelineContext`
through every enabled processor, lowest priority first. A failing processor is
recorded in ``context.logs`` and skipped; the run continues with the next one.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Sequence, Union

from .event_log import PipelineEventLogger
from .types import PipelineContext

LOGGER = logging.getLogger(__name__)

ENGINE_LOG_ID = "pipeline"
_PRIORITY_STEP = 100

ProcessorCallable = Callable[[PipelineContext], Union[Awaitable[None], None]]
CancelSignal = Union[asyncio.Event, Callable[[], bool]]

__all__ = [
    "ENGINE_LOG_ID",
    "CancelSignal",
    "ContextProcessor",
    "PipelineAbort",
    "PipelineEngine",
]


class PipelineAbort(RuntimeError):
    """Raised by a processor whose precondition failed; ends the run early."""


@dataclass(slots=True)
class ContextProcessor:
    """A single pipeline stage.

    ``execute`` may be a plain function or a coroutine function; it mutates
    the context in place and returns nothing.
    """

    id: str
    name: str
    priority: int
    execute: ProcessorCallable
    default_enabled: bool = True
    description: str = ""


class PipelineEngine:
    """Registry plus sequential runner for :class:`ContextProcessor` stages."""

    def __init__(
        self,
        processors: Iterable[ContextProcessor] | None = None,
        *,
        event_logger: PipelineEventLogger | None = None,
    ) -> None:
        self._registry: Dict[str, ContextProcessor] = {}
        self._enabled: Dict[str, bool] = {}
        self._defaults: List[ContextProcessor] = []
        self._event_logger = event_logger
        for processor in processors or ():
            self.register(processor)
        self._defaults = [dataclasses.replace(processor) for processor in self._registry.values()]

    # ------------------------------------------------------------------
    # Registry management
    # ------------------------------------------------------------------
    def register(self, processor: ContextProcessor) -> None:
        if processor.id in self._registry:
            LOGGER.warning("Processor %s already registered; replacing it", processor.id)
        self._registry[processor.id] = processor
        self._enabled[processor.id] = processor.default_enabled
        LOGGER.debug("Registered processor %s (priority %s)", processor.id, processor.priority)

    def unregister(self, processor_id: str) -> bool:
        removed = self._registry.pop(processor_id, None)
        self._enabled.pop(processor_id, None)
        if removed is None:
            LOGGER.warning("Cannot unregister unknown processor %s", processor_id)
            return False
        return True

    def set_enabled(self, processor_id: str, enabled: bool) -> None:
        if processor_id not in self._registry:
            raise KeyError(f"Unknown processor: {processor_id}")
        self._enabled[processor_id] = bool(enabled)

    def is_enabled(self, processor_id: str) -> bool:
        return self._enabled.get(processor_id, False)

    def reorder(self, processor_ids: Sequence[str]) -> None:
        """Reassign priorities ``100, 200, ...`` following ``processor_ids``.

        Processors missing from ``processor_ids`` keep their relative order
        and are placed after the listed ones.
        """

        listed = [pid for pid in dict.fromkeys(processor_ids) if pid in self._registry]
        unknown = [pid for pid in processor_ids if pid not in self._registry]
        if unknown:
            LOGGER.warning("Ignoring unknown processor ids in reorder: %s", unknown)
        remaining = [processor.id for processor in self._sorted() if processor.id not in listed]
        for index, processor_id in enumerate(listed + remaining, start=1):
            self._registry[processor_id].priority = index * _PRIORITY_STEP

    def reset_to_defaults(self) -> None:
        """Restore the processors, priorities and enabled flags given at construction."""

        self._registry.clear()
        self._enabled.clear()
        for processor in self._defaults:
            self.register(dataclasses.replace(processor))

    def get(self, processor_id: str) -> ContextProcessor | None:
        return self._registry.get(processor_id)

    @property
    def all_processors(self) -> List[ContextProcessor]:
        return self._sorted()

    @property
    def processors(self) -> List[ContextProcessor]:
        """Enabled processors in execution order."""

        return [processor for processor in self._sorted() if self._enabled.get(processor.id, False)]

    def _sorted(self) -> List[ContextProcessor]:
        # sorted() is stable, so equal priorities keep registration order.
        return sorted(self._registry.values(), key=lambda processor: processor.priority)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute(
        self,
        context: PipelineContext,
        *,
        cancel: CancelSignal | None = None,
    ) -> PipelineContext:
        """Run every enabled processor over ``context`` and return it."""

        stages = self.processors
        event_run = self._start_event_run(context, stages)
        with event_run:
            for processor in stages:
                if _is_cancelled(cancel):
                    context.log(
                        "warn",
                        f"Pipeline cancelled before {processor.id}; remaining stages skipped",
                        processor_id=ENGINE_LOG_ID,
                    )
                    event_run.log_failure(message="cancelled", details={"next_processor": processor.id})
                    return context

                started = time.perf_counter()
                try:
                    result = processor.execute(context)
                    if inspect.isawaitable(result):
                        await result
                except PipelineAbort as exc:
                    context.log(
                        "warn",
                        f"{processor.name} aborted the pipeline: {exc}",
                        processor_id=processor.id,
                    )
                    event_run.log_stage(
                        processor_id=processor.id,
                        status="aborted",
                        duration_ms=_elapsed_ms(started),
                        message_count=len(context.messages),
                        error=str(exc),
                    )
                    event_run.log_failure(message=str(exc), details={"processor_id": processor.id})
                    return context
                except Exception as exc:  # noqa: BLE001 - stage isolation
                    LOGGER.debug("Processor %s raised", processor.id, exc_info=True)
                    context.log(
                        "error",
                        f"{processor.name} failed: {exc}",
                        processor_id=processor.id,
                        details={"exception": type(exc).__name__},
                    )
                    event_run.log_stage(
                        processor_id=processor.id,
                        status="error",
                        duration_ms=_elapsed_ms(started),
                        message_count=len(context.messages),
                        error=f"{type(exc).__name__}: {exc}",
                    )
                    continue

                event_run.log_stage(
                    processor_id=processor.id,
                    status="ok",
                    duration_ms=_elapsed_ms(started),
                    message_count=len(context.messages),
                )

            event_run.log_completion(
                messages=[message.as_payload() for message in context.messages],
                warnings=[entry.message for entry in context.logs if entry.level in ("warn", "error")],
                shared_data=context.shared_data,
            )
        return context

    def _start_event_run(self, context: PipelineContext, stages: Sequence[ContextProcessor]):
        logger = self._event_logger
        if logger is None:
            logger = PipelineEventLogger(enabled=False)
        return logger.start_run(
            run_id=context.run_id,
            session_id=context.session.id if context.session is not None else None,
            agent_id=context.agent_config.id,
            processors=[processor.id for processor in stages],
            metadata={"budget": context.budget},
        )


def _is_cancelled(cancel: CancelSignal | None) -> bool:
    if cancel is None:
        return False
    if isinstance(cancel, asyncio.Event):
        return cancel.is_set()
    return bool(cancel())


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
