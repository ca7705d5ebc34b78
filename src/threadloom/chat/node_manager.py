"""Mutation operations over a session's message tree.

The manager never rewrites an existing node's content: edits become sibling
branches so earlier turns stay reachable. Every public mutation returns the
session's (possibly updated) ``active_leaf_id``.

Callers must serialise these mutations against context builds for the same
session; the manager does not lock.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from . import branch_navigator
from .branch_navigator import Direction
from .errors import ChatTreeError, NodeNotFoundError, RootNodeError
from .message_model import ChatRole, ChatSession, MessageContent, MessageNode, new_node_id

LOGGER = logging.getLogger(__name__)

# Per-generation details that should not follow an edited copy of a node.
_EXECUTION_METADATA_KEYS: frozenset[str] = frozenset(
    {
        "usage",
        "error",
        "token_count",
        "content_tokens",
        "is_truncated",
        "request_started_at",
        "request_finished_at",
    }
)

__all__ = ["NodeManager"]


class NodeManager:
    """Applies structural edits to a :class:`ChatSession`."""

    def __init__(self, session: ChatSession) -> None:
        self._session = session

    @property
    def session(self) -> ChatSession:
        return self._session

    @property
    def active_leaf_id(self) -> str:
        return self._session.active_leaf_id

    # ------------------------------------------------------------------
    # Node construction
    # ------------------------------------------------------------------
    @staticmethod
    def create_node(
        role: ChatRole,
        content: MessageContent,
        *,
        parent_id: str | None = None,
        enabled: bool = True,
        metadata: Mapping[str, Any] | None = None,
    ) -> MessageNode:
        """Return a detached node with a freshly generated id."""

        return MessageNode(
            id=new_node_id(),
            parent_id=parent_id,
            role=role,
            content=content,
            enabled=enabled,
            metadata=dict(metadata or {}),
        )

    # ------------------------------------------------------------------
    # Public mutations
    # ------------------------------------------------------------------
    def append_child(self, parent_id: str, node: MessageNode) -> str:
        """Attach ``node`` under ``parent_id`` and make it the active leaf."""

        session = self._session
        parent = self._require(parent_id, operation="append_child")
        if node.id in session.nodes:
            raise ChatTreeError(f"append_child: node id {node.id!r} already exists")
        node.parent_id = parent.id
        session.nodes[node.id] = node
        if node.id not in parent.children_ids:
            parent.children_ids.append(node.id)
        self._set_active_leaf(node.id)
        LOGGER.debug(
            "Appended %s node %s under %s in session %s",
            node.role,
            node.id,
            parent.id,
            session.id,
        )
        return session.active_leaf_id

    def edit_as_branch(self, node_id: str, new_content: MessageContent) -> str:
        """Create an edited sibling of ``node_id`` and make it the active leaf.

        The original node and all of its descendants are left untouched.
        """

        source = self._require(node_id, operation="edit_as_branch")
        if source.parent_id is None or source.id == self._session.root_node_id:
            raise RootNodeError(source.id, operation="edit_as_branch")
        metadata = {
            key: value for key, value in source.metadata.items() if key not in _EXECUTION_METADATA_KEYS
        }
        metadata["edited_from"] = source.id
        branch = self.create_node(
            source.role,
            new_content,
            parent_id=source.parent_id,
            metadata=metadata,
        )
        LOGGER.info(
            "Branching edit of %s into %s (session %s)",
            source.id,
            branch.id,
            self._session.id,
        )
        return self.append_child(source.parent_id, branch)

    def toggle_enabled(self, node_id: str, enabled: bool) -> str:
        """Set the soft-delete flag on ``node_id``; the tree shape is unchanged."""

        node = self._require(node_id, operation="toggle_enabled")
        if node.enabled != bool(enabled):
            node.enabled = bool(enabled)
            self._session.touch()
            LOGGER.debug("Node %s enabled=%s", node_id, node.enabled)
        return self._session.active_leaf_id

    def delete_subtree(self, node_id: str) -> str:
        """Remove ``node_id`` and every descendant from the session.

        When the active leaf is removed it moves to the nearest surviving
        enabled ancestor (falling back to the removed node's parent).
        """

        session = self._session
        node = self._require(node_id, operation="delete_subtree")
        if node.parent_id is None or node.id == session.root_node_id:
            raise RootNodeError(node.id, operation="delete_subtree")

        doomed = self.collect_subtree_ids(node_id)
        active_removed = session.active_leaf_id in doomed

        parent = session.nodes.get(node.parent_id)
        if parent is not None:
            parent.children_ids = [child for child in parent.children_ids if child != node_id]
        for doomed_id in doomed:
            session.nodes.pop(doomed_id, None)

        if active_removed:
            session.active_leaf_id = self._nearest_surviving_ancestor(node.parent_id)
        session.touch()
        LOGGER.info(
            "Deleted %d node(s) rooted at %s from session %s (active leaf now %s)",
            len(doomed),
            node_id,
            session.id,
            session.active_leaf_id,
        )
        return session.active_leaf_id

    def switch_active_leaf(self, node_id: str) -> str:
        """Point the session's active leaf at ``node_id``."""

        self._require(node_id, operation="switch_active_leaf")
        self._set_active_leaf(node_id)
        return self._session.active_leaf_id

    # ------------------------------------------------------------------
    # Convenience operations built on the primitives above
    # ------------------------------------------------------------------
    def create_message_pair(
        self,
        user_content: MessageContent,
        *,
        parent_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> tuple[MessageNode, MessageNode]:
        """Append a user turn plus an empty assistant placeholder beneath it."""

        anchor = parent_id if parent_id is not None else self._session.active_leaf_id
        user_node = self.create_node("user", user_content, metadata=metadata)
        self.append_child(anchor, user_node)
        assistant_node = self.create_node("assistant", "", metadata={"status": "generating"})
        self.append_child(user_node.id, assistant_node)
        return user_node, assistant_node

    def switch_to_sibling(self, node_id: str, direction: Direction) -> str:
        self._require(node_id, operation="switch_to_sibling")
        target = branch_navigator.switch_to_sibling(self._session, node_id, direction)
        if target != node_id or self._session.active_leaf_id != target:
            self._set_active_leaf(target)
        return self._session.active_leaf_id

    def collect_subtree_ids(self, node_id: str) -> list[str]:
        """Return ``node_id`` followed by all descendant ids (breadth-first)."""

        session = self._session
        ordered: list[str] = []
        seen: set[str] = set()
        queue = [node_id]
        while queue:
            current = queue.pop(0)
            if current in seen or current not in session.nodes:
                continue
            seen.add(current)
            ordered.append(current)
            queue.extend(session.nodes[current].children_ids)
        return ordered

    def get_all_descendants(self, node_id: str) -> list[MessageNode]:
        self._require(node_id, operation="get_all_descendants")
        return [self._session.nodes[child] for child in self.collect_subtree_ids(node_id)[1:]]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require(self, node_id: str | None, *, operation: str) -> MessageNode:
        node = self._session.get(node_id)
        if node is None:
            LOGGER.warning("%s failed: node %s not found in session %s", operation, node_id, self._session.id)
            raise NodeNotFoundError(node_id, operation=operation)
        return node

    def _set_active_leaf(self, node_id: str) -> None:
        previous = self._session.active_leaf_id
        self._session.active_leaf_id = node_id
        self._session.touch()
        LOGGER.debug("Active leaf %s -> %s (session %s)", previous, node_id, self._session.id)

    def _nearest_surviving_ancestor(self, start_id: str | None) -> str:
        session = self._session
        fallback: str | None = None
        for ancestor in branch_navigator.iter_ancestors(session, start_id):
            if fallback is None:
                fallback = ancestor.id
            if ancestor.enabled or ancestor.id == session.root_node_id:
                return ancestor.id
        return fallback or session.root_node_id
