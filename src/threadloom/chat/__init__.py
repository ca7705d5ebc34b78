"""Conversation tree model, traversal, and mutation helpers."""

from .errors import ChatTreeError, NodeNotFoundError, RootNodeError
from .message_model import (
    ChatRole,
    ChatSession,
    ContentPart,
    MessageContent,
    MessageNode,
    build_linear_session,
    create_session,
    text_of,
    full_text_of,
)
from .node_manager import NodeManager

__all__ = [
    "ChatRole",
    "ChatSession",
    "ChatTreeError",
    "ContentPart",
    "MessageContent",
    "MessageNode",
    "NodeManager",
    "NodeNotFoundError",
    "RootNodeError",
    "build_linear_session",
    "create_session",
    "text_of",
    "full_text_of",
]
