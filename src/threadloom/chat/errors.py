"""Error types raised by message tree mutations."""

from __future__ import annotations


class ChatTreeError(RuntimeError):
    """Base class for invalid operations against a conversation tree."""


class NodeNotFoundError(ChatTreeError, KeyError):
    """Raised when an operation references a node id missing from the session."""

    def __init__(self, node_id: str | None, *, operation: str = "lookup") -> None:
        super().__init__(f"{operation}: node {node_id!r} does not exist")
        self.node_id = node_id
        self.operation = operation

    def __str__(self) -> str:  # KeyError would otherwise repr() the message
        return str(self.args[0])


class RootNodeError(ChatTreeError):
    """Raised when an operation would remove or branch the session root."""

    def __init__(self, node_id: str, *, operation: str) -> None:
        super().__init__(f"{operation}: the session root {node_id!r} cannot be used here")
        self.node_id = node_id
        self.operation = operation


__all__ = ["ChatTreeError", "NodeNotFoundError", "RootNodeError"]
