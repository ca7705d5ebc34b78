"""Shared pytest fixtures."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator

import pytest

from threadloom.chat.message_model import ChatSession, build_linear_session
from threadloom.utils import logging as logging_utils


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Keep THREADLOOM_* variables and log files out of the developer's home."""

    for name in list(os.environ):
        if name.startswith("THREADLOOM_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("THREADLOOM_LOG_DIR", str(tmp_path / "logs"))
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        # setup_logging installs a rotating file handler and a plain stderr handler.
        if isinstance(handler, logging.FileHandler) or type(handler) is logging.StreamHandler:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(logging.WARNING)
    logging_utils.reset_logging_state()


@pytest.fixture
def hello_session() -> ChatSession:
    """root -> A(user, "hi") -> B(assistant, "hello"), active leaf B."""

    return build_linear_session([("user", "hi"), ("assistant", "hello")], name="hello")


@pytest.fixture
def long_session() -> ChatSession:
    return build_linear_session(
        [
            ("system", "Stay in character."),
            ("user", "first question"),
            ("assistant", "first answer"),
            ("user", "second question"),
            ("assistant", "second answer"),
        ],
        name="long",
    )
