"""Built-in context processors, in execution order."""

from __future__ import annotations

from ..engine import ContextProcessor
from . import injection_assembler, regex_processor, session_loader, token_limiter

__all__ = [
    "default_processors",
    "injection_assembler",
    "regex_processor",
    "session_loader",
    "token_limiter",
]


def default_processors() -> list[ContextProcessor]:
    """Return fresh instances of the four built-in processors."""

    return [
        session_loader.create_processor(),
        regex_processor.create_processor(),
        token_limiter.create_processor(),
        injection_assembler.create_processor(),
    ]
