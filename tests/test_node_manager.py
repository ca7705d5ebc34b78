"""Tests for structural edits performed by the node manager."""

from __future__ import annotations

import pytest

from threadloom.chat import branch_navigator
from threadloom.chat.errors import ChatTreeError, NodeNotFoundError, RootNodeError
from threadloom.chat.message_model import ChatSession, create_session
from threadloom.chat.node_manager import NodeManager


def _path_contents(session: ChatSession, start_id: str | None = None) -> list[str]:
    return [node.content for node in branch_navigator.get_active_path(session, start_id)]  # type: ignore[misc]


def _first_two(session: ChatSession) -> tuple[str, str]:
    a, b = branch_navigator.get_active_path(session)
    return a.id, b.id


class TestAppendChild:
    def test_sets_active_leaf_and_links_parent(self) -> None:
        session = create_session()
        manager = NodeManager(session)
        node = manager.create_node("user", "hello")

        leaf = manager.append_child(session.root_node_id, node)

        assert leaf == node.id == session.active_leaf_id
        assert session.nodes[session.root_node_id].children_ids == [node.id]
        assert node.parent_id == session.root_node_id

    def test_missing_parent_raises_key_error(self) -> None:
        manager = NodeManager(create_session())

        with pytest.raises(NodeNotFoundError) as excinfo:
            manager.append_child("node-missing", manager.create_node("user", "x"))

        assert isinstance(excinfo.value, KeyError)
        assert excinfo.value.node_id == "node-missing"

    def test_duplicate_id_is_rejected(self, hello_session: ChatSession) -> None:
        manager = NodeManager(hello_session)
        existing = hello_session.nodes[hello_session.active_leaf_id]

        with pytest.raises(ChatTreeError):
            manager.append_child(hello_session.root_node_id, existing)


class TestEditAsBranch:
    def test_creates_sibling_and_keeps_old_branch(self, hello_session: ChatSession) -> None:
        manager = NodeManager(hello_session)
        a_id, b_id = _first_two(hello_session)

        leaf = manager.edit_as_branch(a_id, "hi there")

        a2 = hello_session.nodes[leaf]
        assert a2.parent_id == hello_session.root_node_id
        assert hello_session.nodes[hello_session.root_node_id].children_ids == [a_id, a2.id]
        assert hello_session.active_leaf_id == a2.id
        assert hello_session.nodes[a_id].content == "hi"
        assert _path_contents(hello_session, b_id) == ["hi", "hello"]
        assert _path_contents(hello_session, a2.id) == ["hi there"]

    def test_old_branch_reachable_via_switch(self, hello_session: ChatSession) -> None:
        manager = NodeManager(hello_session)
        a_id, b_id = _first_two(hello_session)
        manager.edit_as_branch(a_id, "hi there")

        assert manager.switch_active_leaf(b_id) == b_id
        assert _path_contents(hello_session) == ["hi", "hello"]

    def test_metadata_drops_generation_details(self, hello_session: ChatSession) -> None:
        manager = NodeManager(hello_session)
        _, b_id = _first_two(hello_session)
        hello_session.nodes[b_id].metadata.update({"usage": {"total": 5}, "model": "gpt", "error": "x"})

        leaf = manager.edit_as_branch(b_id, "hello again")

        assert hello_session.nodes[leaf].metadata == {"model": "gpt", "edited_from": b_id}
        assert hello_session.nodes[b_id].metadata["usage"] == {"total": 5}

    def test_root_cannot_be_edited(self, hello_session: ChatSession) -> None:
        manager = NodeManager(hello_session)

        with pytest.raises(RootNodeError):
            manager.edit_as_branch(hello_session.root_node_id, "nope")


class TestToggleEnabled:
    def test_soft_delete_keeps_structure(self, hello_session: ChatSession) -> None:
        manager = NodeManager(hello_session)
        a_id, b_id = _first_two(hello_session)
        before = {node_id: list(node.children_ids) for node_id, node in hello_session.nodes.items()}

        leaf = manager.toggle_enabled(a_id, False)

        assert leaf == b_id
        assert {node_id: list(node.children_ids) for node_id, node in hello_session.nodes.items()} == before
        assert _path_contents(hello_session) == ["hello"]
        manager.toggle_enabled(a_id, True)
        assert _path_contents(hello_session) == ["hi", "hello"]


class TestDeleteSubtree:
    def test_removes_descendants_and_moves_active_leaf(self, long_session: ChatSession) -> None:
        manager = NodeManager(long_session)
        path = branch_navigator.get_active_path(long_session)
        doomed = path[2]

        leaf = manager.delete_subtree(doomed.id)

        assert leaf == path[1].id
        assert all(node.id not in long_session.nodes for node in path[2:])
        assert long_session.nodes[path[1].id].children_ids == []

    def test_active_leaf_skips_disabled_ancestor(self, long_session: ChatSession) -> None:
        manager = NodeManager(long_session)
        path = branch_navigator.get_active_path(long_session)
        path[2].enabled = False

        leaf = manager.delete_subtree(path[3].id)

        assert leaf == path[1].id

    def test_active_leaf_outside_subtree_is_unchanged(self) -> None:
        session = create_session()
        manager = NodeManager(session)
        keep = manager.create_node("user", "keep")
        manager.append_child(session.root_node_id, keep)
        drop = manager.create_node("user", "drop")
        manager.append_child(session.root_node_id, drop)
        manager.switch_active_leaf(keep.id)

        assert manager.delete_subtree(drop.id) == keep.id
        assert drop.id not in session.nodes

    def test_root_cannot_be_deleted(self, hello_session: ChatSession) -> None:
        with pytest.raises(RootNodeError):
            NodeManager(hello_session).delete_subtree(hello_session.root_node_id)

    def test_unknown_node_raises(self, hello_session: ChatSession) -> None:
        with pytest.raises(NodeNotFoundError):
            NodeManager(hello_session).delete_subtree("node-missing")


class TestConvenience:
    def test_switch_active_leaf_validates_id(self, hello_session: ChatSession) -> None:
        manager = NodeManager(hello_session)
        before = hello_session.active_leaf_id

        with pytest.raises(NodeNotFoundError):
            manager.switch_active_leaf("node-missing")
        assert hello_session.active_leaf_id == before

    def test_create_message_pair(self, hello_session: ChatSession) -> None:
        manager = NodeManager(hello_session)
        previous_leaf = hello_session.active_leaf_id

        user_node, assistant_node = manager.create_message_pair("next question")

        assert user_node.parent_id == previous_leaf
        assert assistant_node.parent_id == user_node.id
        assert assistant_node.content == ""
        assert assistant_node.metadata["status"] == "generating"
        assert hello_session.active_leaf_id == assistant_node.id

    def test_switch_to_sibling_moves_active_leaf(self, hello_session: ChatSession) -> None:
        manager = NodeManager(hello_session)
        a_id, b_id = _first_two(hello_session)
        a2 = manager.edit_as_branch(a_id, "edited")

        assert manager.switch_to_sibling(a2, "next") == b_id
        assert manager.switch_to_sibling(a_id, "prev") == a2

    def test_get_all_descendants(self, long_session: ChatSession) -> None:
        manager = NodeManager(long_session)
        path = branch_navigator.get_active_path(long_session)

        descendants = manager.get_all_descendants(path[1].id)

        assert [node.id for node in descendants] == [node.id for node in path[2:]]
