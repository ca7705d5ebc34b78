"""Debug event logging for context pipeline runs."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)


def _default_event_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "events"
    return logging_utils.default_log_dir() / "events"


@dataclass(slots=True)
class _NullPipelineEventLogRun:
    """No-op implementation used when event logging is disabled."""

    path: Path | None = None

    def __enter__(self) -> "_NullPipelineEventLogRun":  # noqa: D401
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        return False

    def log_stage(self, *_: Any, **__: Any) -> None:
        return

    def log_completion(self, *_: Any, **__: Any) -> None:
        return

    def log_failure(self, *_: Any, **__: Any) -> None:
        return


class PipelineEventLogRun:
    """Context manager that writes structured JSONL entries for one pipeline run."""

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._file = path.open("w", encoding="utf-8")
        self._finalized = False
        self._write_entry("start", context)

    def __enter__(self) -> "PipelineEventLogRun":  # noqa: D401
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        if exc is not None and not self._finalized:
            self.log_failure(message=str(exc))
        elif not self._finalized:
            self.log_failure(message="run ended without completion")
        return False

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()

    def log_stage(
        self,
        *,
        processor_id: str,
        status: str,
        duration_ms: float,
        message_count: int,
        error: str | None = None,
    ) -> None:
        if self._finalized:
            return
        payload: dict[str, Any] = {
            "processor_id": processor_id,
            "status": status,
            "duration_ms": round(duration_ms, 3),
            "message_count": message_count,
        }
        if error:
            payload["error"] = error
        self._write_entry("stage", payload)

    def log_completion(
        self,
        *,
        messages: Sequence[Mapping[str, Any]],
        warnings: Sequence[str] | None = None,
        shared_data: Mapping[str, Any] | None = None,
    ) -> None:
        if self._finalized:
            return
        payload = {
            "status": "success",
            "message_count": len(messages),
            "messages": list(messages),
            "warnings": list(warnings or ()),
            "shared_data": dict(shared_data or {}),
        }
        self._write_entry("completion", payload)
        self._finalized = True
        self.close()

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        if self._finalized:
            return
        payload: dict[str, Any] = {
            "status": "failure",
            "message": message,
        }
        if details:
            payload["details"] = dict(details)
        self._write_entry("failure", payload)
        self._finalized = True
        self.close()

    def _write_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {
            "event": event,
            "timestamp": time.time(),
        }
        if payload:
            for key, value in payload.items():
                entry[key] = self._safe_json(value)
        try:
            self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")
            self._file.flush()
        except OSError:
            LOGGER.warning("Pipeline event log write failed; disabling log %s", self.path, exc_info=True)
            self._finalized = True
            self._close_quietly()

    def _close_quietly(self) -> None:
        try:
            self.close()
        except OSError:
            LOGGER.debug("Failed to close pipeline event log %s", self.path, exc_info=True)

    def _safe_json(self, value: Any, *, depth: int = 0) -> Any:
        if depth > 6:
            return repr(value)
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, Mapping):
            return {str(key): self._safe_json(val, depth=depth + 1) for key, val in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._safe_json(item, depth=depth + 1) for item in value]
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return repr(value)


class PipelineEventLogger:
    """Factory for per-run event logs when debug event logging is enabled."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else _default_event_dir()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def start_run(
        self,
        *,
        run_id: str,
        session_id: str | None,
        agent_id: str | None,
        processors: Sequence[str],
        metadata: Mapping[str, Any] | None = None,
    ) -> PipelineEventLogRun | _NullPipelineEventLogRun:
        if not self.enabled:
            return _NullPipelineEventLogRun()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            path = self._allocate_path(run_id)
            context = {
                "run_id": run_id,
                "session_id": session_id,
                "agent_id": agent_id,
                "processors": list(processors),
                "metadata": dict(metadata or {}),
            }
            log_run = PipelineEventLogRun(path, context=context)
            LOGGER.debug("Pipeline event log started: %s", path)
            return log_run
        except OSError:
            LOGGER.warning("Failed to start pipeline event log in %s", self._base_dir, exc_info=True)
            return _NullPipelineEventLogRun()

    def _allocate_path(self, run_id: str) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        safe_run_id = "".join(ch for ch in run_id if ch.isalnum())[:12] or "run"
        return self._base_dir / f"pipeline-{timestamp}-{safe_run_id}.jsonl"


__all__ = [
    "PipelineEventLogger",
    "PipelineEventLogRun",
]
