"""Read-only traversal helpers over a session's message tree.

Every walk here is iterative and guarded by a visited set, so a corrupted tree
(dangling parent ids, accidental cycles) yields a truncated result and a
warning instead of an exception or an endless loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, Literal

from .message_model import ChatSession, MessageNode

LOGGER = logging.getLogger(__name__)

Direction = Literal["prev", "next"]

__all__ = [
    "Direction",
    "IntegrityReport",
    "iter_ancestors",
    "get_active_path",
    "get_siblings",
    "get_sibling_index",
    "find_leaf_of_branch",
    "switch_to_sibling",
    "is_node_in_active_path",
    "validate_integrity",
]


def iter_ancestors(session: ChatSession, start_id: str | None) -> Iterator[MessageNode]:
    """Yield ``start_id`` and each ancestor up to and including the root.

    Stops early (with a warning) on a missing node or a repeated id.
    """

    visited: set[str] = set()
    current = start_id
    while current is not None:
        if current in visited:
            LOGGER.warning(
                "Cycle detected while walking session %s: node %s revisited",
                session.id,
                current,
            )
            return
        visited.add(current)
        node = session.nodes.get(current)
        if node is None:
            LOGGER.warning(
                "Session %s references missing node %s; history truncated",
                session.id,
                current,
            )
            return
        yield node
        if node.id == session.root_node_id:
            return
        current = node.parent_id


def get_active_path(
    session: ChatSession,
    start_id: str | None = None,
    *,
    include_disabled: bool = False,
) -> list[MessageNode]:
    """Return the nodes from the root (exclusive) to ``start_id`` (inclusive).

    ``start_id`` defaults to the session's active leaf. Disabled nodes are
    skipped unless ``include_disabled`` is set, but their parent link is still
    followed so the rest of the branch survives.
    """

    origin = start_id if start_id is not None else session.active_leaf_id
    path: list[MessageNode] = []
    for node in iter_ancestors(session, origin):
        if node.id == session.root_node_id or node.parent_id is None:
            break
        if node.enabled or include_disabled:
            path.append(node)
    path.reverse()
    return path


def get_siblings(session: ChatSession, node_id: str) -> list[MessageNode]:
    """Return every child of ``node_id``'s parent, including the node itself."""

    node = session.nodes.get(node_id)
    if node is None:
        LOGGER.warning("Cannot list siblings: node %s does not exist", node_id)
        return []
    if node.parent_id is None:
        return [node]
    parent = session.nodes.get(node.parent_id)
    if parent is None:
        LOGGER.warning("Cannot list siblings: parent %s of %s is missing", node.parent_id, node_id)
        return [node]
    return [session.nodes[child] for child in parent.children_ids if child in session.nodes]


def get_sibling_index(session: ChatSession, node_id: str) -> tuple[int, int]:
    """Return ``(index, total)`` for ``node_id`` among its siblings."""

    siblings = get_siblings(session, node_id)
    for index, sibling in enumerate(siblings):
        if sibling.id == node_id:
            return index, len(siblings)
    return 0, len(siblings)


def find_leaf_of_branch(session: ChatSession, start_id: str) -> str:
    """Follow first children from ``start_id`` down to a leaf."""

    current = session.nodes.get(start_id)
    if current is None:
        LOGGER.warning("Cannot find leaf: start node %s does not exist", start_id)
        return start_id
    visited = {current.id}
    while current.children_ids:
        next_id = current.children_ids[0]
        child = session.nodes.get(next_id)
        if child is None or child.id in visited:
            LOGGER.warning("Leaf search stopped at %s: child %s unusable", current.id, next_id)
            break
        visited.add(child.id)
        current = child
    return current.id


def switch_to_sibling(session: ChatSession, node_id: str, direction: Direction) -> str:
    """Return the leaf of the sibling branch next to ``node_id``.

    Wraps around at either end; returns ``node_id`` unchanged when it has no
    siblings.
    """

    siblings = get_siblings(session, node_id)
    if len(siblings) <= 1:
        return node_id
    index, total = get_sibling_index(session, node_id)
    step = 1 if direction == "next" else -1
    target = siblings[(index + step) % total]
    return find_leaf_of_branch(session, target.id)


def is_node_in_active_path(session: ChatSession, node_id: str) -> bool:
    return any(node.id == node_id for node in iter_ancestors(session, session.active_leaf_id))


@dataclass(slots=True)
class IntegrityReport:
    """Outcome of :func:`validate_integrity`."""

    is_valid: bool = True
    errors: list[str] = field(default_factory=list)

    def add(self, message: str) -> None:
        self.is_valid = False
        self.errors.append(message)


def validate_integrity(session: ChatSession) -> IntegrityReport:
    """Check the tree invariants without mutating or raising."""

    report = IntegrityReport()
    if session.root_node_id not in session.nodes:
        report.add(f"root node {session.root_node_id} is missing")
    if session.active_leaf_id not in session.nodes:
        report.add(f"active leaf {session.active_leaf_id} is missing")

    roots = [node.id for node in session.nodes.values() if node.parent_id is None]
    if len(roots) != 1 or (roots and roots[0] != session.root_node_id):
        report.add(f"expected exactly one root ({session.root_node_id}), found {sorted(roots)}")

    for node in session.nodes.values():
        if node.parent_id is not None and node.parent_id not in session.nodes:
            report.add(f"node {node.id} references missing parent {node.parent_id}")
        for child_id in node.children_ids:
            child = session.nodes.get(child_id)
            if child is None:
                report.add(f"node {node.id} lists missing child {child_id}")
            elif child.parent_id != node.id:
                report.add(f"node {node.id} lists {child_id} whose parent is {child.parent_id}")

    for node in session.nodes.values():
        seen: set[str] = set()
        current: str | None = node.id
        while current is not None and current in session.nodes:
            if current in seen:
                report.add(f"cycle reachable from node {node.id}")
                break
            seen.add(current)
            current = session.nodes[current].parent_id

    if not report.is_valid:
        LOGGER.error(
            "Session %s failed integrity validation with %d error(s)",
            session.id,
            len(report.errors),
        )
    return report
