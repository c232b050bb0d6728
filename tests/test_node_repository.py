"""Tests for the NodeRepository: CRUD, hierarchy and validation."""
import datetime
import threading

import pytest
from sqlalchemy import insert, text

from notetree.config import config
from notetree.exceptions import (
    CyclicMoveError,
    ErrorCode,
    NodeNotFoundError,
    NoteTreeError,
    SerializationError,
    ValidationError,
)
from notetree.models.db_models import DBNode, DBNodeLink
from notetree.models.schema import NodeUpdate, utc_now


@pytest.fixture
def tree(node_repository):
    """Build root -> child -> grandchild plus an unrelated root."""
    root = node_repository.create("Root")
    child = node_repository.create("Child", parent_id=root.id)
    grandchild = node_repository.create("Grandchild", parent_id=child.id)
    other = node_repository.create("Other root", order=1)
    return root, child, grandchild, other


def _insert_rows(store, rows):
    """Bulk-insert raw (id, parent_id) node rows, bypassing the repository."""
    now = utc_now().replace(tzinfo=None)
    store.with_transaction(lambda s: s.execute(insert(DBNode), [
        {
            "id": node_id, "content": node_id, "parent_id": parent_id, "order": i,
            "properties": "{}", "tags": "[]", "created_at": now, "updated_at": now,
            "created_by": "default_user", "version": 1,
        }
        for i, (node_id, parent_id) in enumerate(rows)
    ]))


class TestCreate:
    """Tests for node creation."""

    def test_create_round_trip(self, node_repository):
        node = node_repository.create(
            "Hello",
            order=3,
            properties={"priority": 2, "nested": {"a": [1, 2]}},
            tags=["#todo", "#work", "#todo"],
        )
        assert node.id.startswith("block-")
        assert node.version == 1
        assert node.created_by == config.default_user_id

        fetched = node_repository.get(node.id)
        assert fetched.content == "Hello"
        assert fetched.order == 3
        assert fetched.properties == {"priority": 2, "nested": {"a": [1, 2]}}
        assert fetched.tags == ["#todo", "#work"]
        assert fetched.parent_id is None
        assert fetched.children == []
        assert fetched.created_at.tzinfo is not None
        assert fetched.created_at == fetched.updated_at

    def test_create_empty_content(self, node_repository):
        node = node_repository.create("")
        assert node_repository.get(node.id).content == ""

    def test_create_under_parent(self, node_repository):
        parent = node_repository.create("Parent")
        child = node_repository.create("Child", parent_id=parent.id)
        assert child.parent_id == parent.id
        assert node_repository.get(parent.id).children == [child.id]

    def test_create_with_missing_parent(self, node_repository):
        with pytest.raises(NodeNotFoundError) as exc_info:
            node_repository.create("Orphan", parent_id="block-missing")
        assert exc_info.value.code == ErrorCode.PARENT_NOT_FOUND
        assert node_repository.count_nodes() == 0

    def test_create_content_too_long(self, node_repository, monkeypatch):
        monkeypatch.setattr(config, "max_content_length", 5)
        with pytest.raises(ValidationError) as exc_info:
            node_repository.create("too long")
        assert exc_info.value.code == ErrorCode.CONTENT_TOO_LONG
        assert exc_info.value.field == "content"
        assert node_repository.count_nodes() == 0

    def test_create_rejects_non_integer_order(self, node_repository):
        with pytest.raises(ValidationError):
            node_repository.create("x", order="first")

    @pytest.mark.parametrize("order", [True, "5"])
    def test_create_rejects_coercible_order(self, node_repository, order):
        with pytest.raises(ValidationError) as exc_info:
            node_repository.create("x", order=order)
        assert exc_info.value.field == "order"
        assert node_repository.count_nodes() == 0

    def test_create_unserializable_properties(self, node_repository):
        with pytest.raises(SerializationError) as exc_info:
            node_repository.create("x", properties={"when": {1, 2}})
        assert exc_info.value.field == "properties"
        assert node_repository.count_nodes() == 0

    def test_content_sanitized_on_store(self, node_repository):
        node = node_repository.create("line\x00one\nline two")
        assert node_repository.get(node.id).content == "lineone\nline two"


class TestRead:
    """Tests for lookups and derived children."""

    def test_get_missing(self, node_repository):
        with pytest.raises(NodeNotFoundError) as exc_info:
            node_repository.get("block-missing")
        assert exc_info.value.node_id == "block-missing"

    def test_children_ordered_by_order(self, node_repository):
        parent = node_repository.create("Parent")
        third = node_repository.create("c", parent_id=parent.id, order=5)
        first = node_repository.create("a", parent_id=parent.id, order=-1)
        second = node_repository.create("b", parent_id=parent.id, order=2)
        assert node_repository.get(parent.id).children == [first.id, second.id, third.id]
        assert [n.content for n in node_repository.get_children(parent.id)] == ["a", "b", "c"]

    def test_get_with_subtree(self, node_repository, tree):
        root, child, grandchild, _ = tree
        subtree = node_repository.get_with_subtree(root.id)
        assert subtree.node.id == root.id
        assert subtree.child_nodes[0].node.id == child.id
        assert subtree.child_nodes[0].child_nodes[0].node.id == grandchild.id
        assert subtree.count() == 3

    def test_get_with_subtree_keeps_sibling_order(self, node_repository):
        parent = node_repository.create("Parent")
        late = node_repository.create("late", parent_id=parent.id, order=9)
        early = node_repository.create("early", parent_id=parent.id, order=1)
        nested = node_repository.create("nested", parent_id=early.id)
        subtree = node_repository.get_with_subtree(parent.id)
        assert [c.node.id for c in subtree.child_nodes] == [early.id, late.id]
        assert subtree.node.children == [early.id, late.id]
        assert subtree.child_nodes[0].node.children == [nested.id]
        assert [n.id for n in subtree.iter_nodes()] == [parent.id, early.id, nested.id, late.id]

    def test_get_with_subtree_missing(self, node_repository):
        with pytest.raises(NodeNotFoundError):
            node_repository.get_with_subtree("block-missing")

    def test_get_with_subtree_deep_chain(self, node_repository, store):
        depth = 600
        _insert_rows(store, [
            (f"deep-{i}", f"deep-{i - 1}" if i else None) for i in range(depth)
        ])
        subtree = node_repository.get_with_subtree("deep-0")
        assert subtree.count() == depth
        current = subtree
        while current.child_nodes:
            current = current.child_nodes[0]
        assert current.node.id == f"deep-{depth - 1}"
        assert current.node.children == []

    def test_stored_content_over_lowered_limit_still_reads(
        self, node_repository, link_index, monkeypatch
    ):
        node = node_repository.create("twenty characters ok")
        child = node_repository.create("child", parent_id=node.id)
        monkeypatch.setattr(config, "max_content_length", 5)

        assert node_repository.get(node.id).content == "twenty characters ok"
        assert [n.content for n in node_repository.list_roots()] == ["twenty characters ok"]
        assert node_repository.get_with_subtree(node.id).node.content == "twenty characters ok"
        assert node_repository.get_ancestors(child.id)[0].id == node.id
        mentions = link_index.unlinked_mentions(node.id, "twenty")
        assert [n.id for n in mentions] == [node.id]
        # Writes other than content are unaffected; new content is still checked
        assert node_repository.update(node.id, tags=["t"]).tags == ["t"]
        with pytest.raises(ValidationError):
            node_repository.update(node.id, content="still too long")

    def test_list_roots(self, node_repository, tree):
        root, _, _, other = tree
        assert [n.id for n in node_repository.list_roots()] == [root.id, other.id]

    def test_get_ancestors(self, node_repository, tree):
        root, child, grandchild, _ = tree
        assert [n.id for n in node_repository.get_ancestors(grandchild.id)] == [child.id, root.id]
        assert node_repository.get_ancestors(root.id) == []

    def test_find_by_tag_is_exact(self, node_repository):
        tagged = node_repository.create("one", tags=["#a"])
        node_repository.create("two", tags=["#ab"])
        node_repository.create("three")
        assert [n.id for n in node_repository.find_by_tag("#a")] == [tagged.id]
        assert node_repository.find_by_tag("#missing") == []

    def test_find_by_content(self, node_repository):
        exact = node_repository.create("Project")
        node_repository.create("Project Alpha")
        assert [n.id for n in node_repository.find_by_content("Project")] == [exact.id]

    def test_get_recent(self, node_repository):
        old = node_repository.create("old")
        new = node_repository.create("new")
        node_repository.update(old.id, content="old, edited")
        recent = node_repository.get_recent(limit=1)
        assert [n.id for n in recent] == [old.id]
        assert len(node_repository.get_recent()) == 2
        assert new.id in {n.id for n in node_repository.get_recent()}

    def test_exists_and_count(self, node_repository):
        node = node_repository.create("x")
        assert node_repository.exists(node.id)
        assert not node_repository.exists("block-missing")
        assert node_repository.count_nodes() == 1

    def test_malformed_blobs_degrade(self, node_repository, store):
        node = node_repository.create("x", properties={"a": 1}, tags=["t"])
        store.with_transaction(lambda s: s.execute(
            text("UPDATE nodes SET properties = 'not json', tags = '{\"a\": 1}' WHERE id = :id"),
            {"id": node.id},
        ))
        fetched = node_repository.get(node.id)
        assert fetched.properties == {}
        assert fetched.tags == []

    def test_non_string_tags_dropped(self, node_repository, store):
        node = node_repository.create("x")
        store.with_transaction(lambda s: s.execute(
            text("UPDATE nodes SET tags = '[\"ok\", 3, \"\", null]' WHERE id = :id"),
            {"id": node.id},
        ))
        assert node_repository.get(node.id).tags == ["ok"]


class TestUpdate:
    """Tests for partial updates and version bookkeeping."""

    def test_update_content_only(self, node_repository):
        node = node_repository.create("before", tags=["keep"], properties={"k": "v"}, order=4)
        updated = node_repository.update(node.id, content="after")
        assert updated.content == "after"
        assert updated.tags == ["keep"]
        assert updated.properties == {"k": "v"}
        assert updated.order == 4
        assert updated.version == 2
        assert updated.created_at == node.created_at
        assert updated.updated_at > node.updated_at

    def test_update_with_model(self, node_repository):
        node = node_repository.create("x")
        updated = node_repository.update(node.id, NodeUpdate(tags=["a", "b"], order=7))
        assert updated.tags == ["a", "b"]
        assert updated.order == 7
        assert updated.content == "x"

    def test_empty_update_bumps_version(self, node_repository):
        node = node_repository.create("x")
        updated = node_repository.update(node.id)
        assert updated.version == 2
        assert updated.updated_at > node.updated_at
        assert updated.content == "x"

    def test_version_monotonic(self, node_repository):
        node = node_repository.create("x")
        previous = node
        for i in range(5):
            current = node_repository.update(node.id, content=f"edit {i}")
            assert current.version == previous.version + 1
            assert current.updated_at > previous.updated_at
            previous = current
        assert previous.version == 6

    def test_update_missing_node(self, node_repository):
        with pytest.raises(NodeNotFoundError):
            node_repository.update("block-missing", content="x")

    def test_update_model_and_fields_rejected(self, node_repository):
        node = node_repository.create("x")
        with pytest.raises(ValidationError):
            node_repository.update(node.id, NodeUpdate(content="a"), order=1)

    def test_update_unknown_field_rejected(self, node_repository):
        node = node_repository.create("x")
        with pytest.raises(ValidationError):
            node_repository.update(node.id, colour="red")
        assert node_repository.get(node.id).version == 1

    @pytest.mark.parametrize("order", [False, "5"])
    def test_update_rejects_coercible_order(self, node_repository, order):
        node = node_repository.create("x", order=3)
        with pytest.raises(ValidationError):
            node_repository.update(node.id, order=order)
        fetched = node_repository.get(node.id)
        assert fetched.order == 3
        assert fetched.version == 1

    def test_serialization_failure_writes_nothing(self, node_repository):
        node = node_repository.create("x", properties={"a": 1})
        with pytest.raises(SerializationError):
            node_repository.update(node.id, content="changed", properties={"bad": object()})
        fetched = node_repository.get(node.id)
        assert fetched.content == "x"
        assert fetched.properties == {"a": 1}
        assert fetched.version == 1

    def test_update_parent_to_root(self, node_repository, tree):
        root, child, _, _ = tree
        updated = node_repository.update(child.id, parent_id=None)
        assert updated.parent_id is None
        assert child.id not in node_repository.get(root.id).children

    def test_update_parent_cycle_rejected(self, node_repository, tree):
        root, _, grandchild, _ = tree
        with pytest.raises(CyclicMoveError):
            node_repository.update(root.id, content="changed", parent_id=grandchild.id)
        fetched = node_repository.get(root.id)
        assert fetched.content == "Root"
        assert fetched.version == 1


class TestMove:
    """Tests for reparenting and cycle rejection."""

    def test_move_under_other_parent(self, node_repository, tree):
        root, child, grandchild, other = tree
        moved = node_repository.move(grandchild.id, other.id, 2)
        assert moved.parent_id == other.id
        assert moved.order == 2
        assert moved.version == 2
        assert node_repository.get(other.id).children == [grandchild.id]
        assert node_repository.get(child.id).children == []

    def test_move_to_root(self, node_repository, tree):
        root, child, _, other = tree
        node_repository.move(child.id, None, 5)
        assert [n.id for n in node_repository.list_roots()] == [root.id, other.id, child.id]

    def test_move_under_descendant_rejected(self, node_repository, tree):
        root, child, grandchild, _ = tree
        with pytest.raises(CyclicMoveError) as exc_info:
            node_repository.move(root.id, grandchild.id, 0)
        assert exc_info.value.ancestor_chain == [grandchild.id, child.id]
        fetched = node_repository.get(root.id)
        assert fetched.parent_id is None
        assert fetched.order == 0
        assert fetched.version == 1

    def test_move_under_self_rejected(self, node_repository, tree):
        root = tree[0]
        with pytest.raises(CyclicMoveError):
            node_repository.move(root.id, root.id, 0)

    def test_move_to_missing_parent(self, node_repository, tree):
        child = tree[1]
        with pytest.raises(NodeNotFoundError) as exc_info:
            node_repository.move(child.id, "block-missing", 0)
        assert exc_info.value.code == ErrorCode.PARENT_NOT_FOUND
        assert node_repository.get(child.id).version == 1

    def test_move_missing_node(self, node_repository, tree):
        with pytest.raises(NodeNotFoundError) as exc_info:
            node_repository.move("block-missing", tree[0].id, 0)
        assert exc_info.value.code == ErrorCode.NODE_NOT_FOUND

    def test_move_rejects_bool_order(self, node_repository, tree):
        with pytest.raises(ValidationError):
            node_repository.move(tree[1].id, None, True)


class TestDelete:
    """Tests for cascading deletion."""

    def test_delete_removes_subtree(self, node_repository, tree):
        root, child, grandchild, other = tree
        assert node_repository.delete(root.id) is None
        for node_id in (root.id, child.id, grandchild.id):
            assert not node_repository.exists(node_id)
        assert node_repository.exists(other.id)
        assert node_repository.count_nodes() == 1

    def test_delete_leaf_updates_parent_children(self, node_repository, tree):
        _, child, grandchild, _ = tree
        node_repository.delete(grandchild.id)
        assert node_repository.get(child.id).children == []

    def test_delete_removes_incident_edges(self, node_repository, link_index, tree):
        root, child, grandchild, other = tree
        source = node_repository.create("See [[Grandchild]] and [[Other root]]")
        back = node_repository.update(other.id, content="Other root mentions [[Child]]")
        link_index.resynchronize(source.id)
        link_index.resynchronize(back.id)
        assert link_index.count_edges() == 3

        node_repository.delete(root.id)
        remaining = link_index.edges_from(source.id)
        assert [e.target_node_id for e in remaining] == [other.id]
        assert link_index.edges_from(other.id) == []
        assert link_index.count_edges() == 1

    def test_delete_missing(self, node_repository):
        with pytest.raises(NodeNotFoundError):
            node_repository.delete("block-missing")

    def test_delete_very_wide_subtree(self, node_repository, link_index, store):
        # More descendants than SQLite's default bound-parameter limit
        width = 33000
        outside = node_repository.create("outside")
        rows = [("wide-root", None)]
        rows += [(f"wide-{i}", "wide-root") for i in range(width)]
        rows += [(f"wide-{i}-leaf", f"wide-{i}") for i in range(100)]
        _insert_rows(store, rows)
        store.with_transaction(lambda s: s.execute(insert(DBNodeLink), [
            {"source_node_id": outside.id, "target_node_id": f"wide-{i}"} for i in range(500)
        ] + [{"source_node_id": "wide-1-leaf", "target_node_id": outside.id}]))
        assert link_index.count_edges() == 501

        node_repository.delete("wide-root")
        assert node_repository.count_nodes() == 1
        assert node_repository.exists(outside.id)
        assert link_index.count_edges() == 0


class TestTimestamps:
    """Tests for timestamp storage."""

    def test_timestamps_are_utc(self, node_repository):
        node = node_repository.create("x")
        fetched = node_repository.get(node.id)
        assert fetched.created_at.utcoffset() == datetime.timedelta(0)
        assert abs(
            datetime.datetime.now(datetime.timezone.utc) - fetched.created_at
        ) < datetime.timedelta(minutes=5)


class TestConcurrentWrites:
    """Tests for writers running on several threads at once."""

    def test_parallel_updates_of_different_nodes(self, node_repository):
        nodes = [node_repository.create(f"node {i}") for i in range(8)]
        errors = []
        lock = threading.Lock()

        def edit(node_id):
            try:
                for i in range(30):
                    node_repository.update(node_id, content=f"edit {i}")
            except NoteTreeError as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=edit, args=(node.id,)) for node in nodes]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == [], f"Errors occurred: {errors}"
        for node in nodes:
            fetched = node_repository.get(node.id)
            assert fetched.version == 31
            assert fetched.content == "edit 29"
