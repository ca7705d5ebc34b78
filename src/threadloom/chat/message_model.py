"""Chat message tree data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Literal, Mapping, Optional, Sequence, Union

__all__ = [
    "ChatRole",
    "ContentPartType",
    "ContentPart",
    "MessageContent",
    "MessageNode",
    "ChatSession",
    "create_session",
    "build_linear_session",
    "new_node_id",
    "text_of",
    "full_text_of",
    "has_non_text_parts",
    "content_to_payload",
    "content_from_payload",
]


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


ChatRole = Literal["user", "assistant", "system"]
ContentPartType = Literal["text", "image", "tool_call", "tool_result"]

_ROLES: frozenset[str] = frozenset({"user", "assistant", "system"})
_PART_TYPES: frozenset[str] = frozenset({"text", "image", "tool_call", "tool_result"})


def new_node_id() -> str:
    """Return a fresh, globally unique node identifier."""

    return f"node-{uuid.uuid4().hex}"


@dataclass(slots=True, frozen=True)
class ContentPart:
    """One typed segment of structured message content."""

    type: ContentPartType
    text: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.type not in _PART_TYPES:
            raise ValueError(f"Unsupported content part type: {self.type!r}")

    @classmethod
    def text_part(cls, text: str) -> ContentPart:
        return cls(type="text", text=text)

    @classmethod
    def image_part(cls, url: str, **extra: Any) -> ContentPart:
        return cls(type="image", data={"url": url, **extra})

    def with_text(self, text: str) -> ContentPart:
        """Return a copy of this part carrying ``text``."""

        return ContentPart(type=self.type, text=text, data=dict(self.data))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        if self.text is not None:
            payload["text"] = self.text
        if self.data:
            payload["data"] = dict(self.data)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ContentPart:
        return cls(
            type=payload.get("type", "text"),  # type: ignore[arg-type]
            text=payload.get("text"),
            data=dict(payload.get("data") or {}),
        )


# Plain text or a structured sequence of parts, never both.
MessageContent = Union[str, tuple[ContentPart, ...]]


def text_of(content: MessageContent) -> str | None:
    """Return the text carried by ``content``.

    Plain strings are returned as-is; structured content yields its first text
    part, or ``None`` when no text part exists.
    """

    if isinstance(content, str):
        return content
    for part in content:
        if part.type == "text" and isinstance(part.text, str):
            return part.text
    return None


def full_text_of(content: MessageContent) -> str | None:
    """Return every text part of ``content`` joined by newlines."""

    if isinstance(content, str):
        return content
    texts = [part.text for part in content if part.type == "text" and isinstance(part.text, str)]
    return "\n".join(texts) if texts else None


def has_non_text_parts(content: MessageContent) -> bool:
    if isinstance(content, str):
        return False
    return any(part.type != "text" for part in content)


def content_to_payload(content: MessageContent) -> str | list[Dict[str, Any]]:
    if isinstance(content, str):
        return content
    return [part.to_dict() for part in content]


def content_from_payload(payload: Any) -> MessageContent:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (list, tuple)):
        return tuple(
            part if isinstance(part, ContentPart) else ContentPart.from_dict(part)
            for part in payload
        )
    raise TypeError(f"Unsupported message content payload: {type(payload).__name__}")


@dataclass(slots=True)
class MessageNode:
    """A single turn inside the conversation tree."""

    id: str
    parent_id: Optional[str]
    role: ChatRole
    content: MessageContent = ""
    enabled: bool = True
    children_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"Unsupported message role: {self.role!r}")
        if isinstance(self.content, list):
            self.content = tuple(self.content)

    @property
    def text(self) -> str | None:
        return text_of(self.content)

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the node for persistence."""

        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "role": self.role,
            "content": content_to_payload(self.content),
            "enabled": self.enabled,
            "children_ids": list(self.children_ids),
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> MessageNode:
        created_raw = payload.get("created_at")
        created_at = datetime.fromisoformat(created_raw) if isinstance(created_raw, str) else _utcnow()
        return cls(
            id=str(payload["id"]),
            parent_id=payload.get("parent_id"),
            role=payload.get("role", "user"),
            content=content_from_payload(payload.get("content")),
            enabled=bool(payload.get("enabled", True)),
            children_ids=[str(child) for child in payload.get("children_ids") or ()],
            created_at=created_at,
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(slots=True)
class ChatSession:
    """Conversation container owning the message tree."""

    root_node_id: str
    active_leaf_id: str
    nodes: Dict[str, MessageNode] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"session-{uuid.uuid4().hex[:12]}")
    name: str = ""
    updated_at: datetime = field(default_factory=_utcnow)

    def get(self, node_id: str | None) -> MessageNode | None:
        if node_id is None:
            return None
        return self.nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "root_node_id": self.root_node_id,
            "active_leaf_id": self.active_leaf_id,
            "updated_at": self.updated_at.isoformat(),
            "nodes": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ChatSession:
        raw_nodes = payload.get("nodes") or {}
        if isinstance(raw_nodes, Mapping):
            entries: Iterable[Any] = raw_nodes.values()
        else:
            entries = raw_nodes
        nodes = {node.id: node for node in (MessageNode.from_dict(entry) for entry in entries)}
        updated_raw = payload.get("updated_at")
        session = cls(
            root_node_id=str(payload["root_node_id"]),
            active_leaf_id=str(payload.get("active_leaf_id") or payload["root_node_id"]),
            nodes=nodes,
            name=str(payload.get("name") or ""),
        )
        if payload.get("id"):
            session.id = str(payload["id"])
        if isinstance(updated_raw, str):
            session.updated_at = datetime.fromisoformat(updated_raw)
        _rebuild_children(session)
        return session


def _rebuild_children(session: ChatSession) -> None:
    """Ensure every node's ``children_ids`` reflects the ``parent_id`` links."""

    for node in session.nodes.values():
        node.children_ids = [child for child in node.children_ids if child in session.nodes]
    for node in session.nodes.values():
        parent = session.nodes.get(node.parent_id) if node.parent_id else None
        if parent is not None and node.id not in parent.children_ids:
            parent.children_ids.append(node.id)


def create_session(*, name: str = "", root_content: str = "", session_id: str | None = None) -> ChatSession:
    """Create an empty session holding only its synthetic root node."""

    root = MessageNode(id=new_node_id(), parent_id=None, role="system", content=root_content)
    session = ChatSession(root_node_id=root.id, active_leaf_id=root.id, nodes={root.id: root}, name=name)
    if session_id:
        session.id = session_id
    return session


def build_linear_session(turns: Sequence[tuple[ChatRole, MessageContent]], *, name: str = "") -> ChatSession:
    """Build a session whose active branch holds ``turns`` in order."""

    session = create_session(name=name)
    parent_id = session.root_node_id
    for role, content in turns:
        node = MessageNode(id=new_node_id(), parent_id=parent_id, role=role, content=content)
        session.nodes[node.id] = node
        session.nodes[parent_id].children_ids.append(node.id)
        parent_id = node.id
    session.active_leaf_id = parent_id
    return session
