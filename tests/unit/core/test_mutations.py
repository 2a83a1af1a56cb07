"""
Unit tests for core/mutations.py

Covers:
- add_node: validation, random placement, sync op
- update_node / move_node
- delete_node reconnection (parents x children)
- connect / delete_edge
"""
import random

import pytest

from core import mutations
from core.graph_db import EdgeNotFoundError, NodeNotFoundError
from core.layout import RANDOM_AREA
from core.mutations import SyncKind
from core.ontology import EdgeKind, NodeType
from core.schemas import EdgeData, NodeInput, NodeUpdate, Position, ValidationError
from tests.helpers import make_node


# =============================================================================
# ADD NODE
# =============================================================================

def test_add_node_on_empty_graph(store):
    result = mutations.add_node(
        store,
        NodeInput(title="X", type=NodeType.PAPER, position=Position(x=10, y=20)),
    )

    assert store.node_count == 1
    node = result.nodes_added[0]
    assert node.title == "X"
    assert node.type == NodeType.PAPER
    assert not node.is_recommendation
    assert store.edge_count == 0


def test_add_node_roundtrip_fields(store):
    result = mutations.add_node(
        store,
        NodeInput(
            title="ImageNet",
            type=NodeType.DATASET,
            description="Images",
            position=Position(x=12.5, y=40),
        ),
    )
    node = store.get_node(result.nodes_added[0].id)

    assert (node.title, node.type, node.description) == ("ImageNet", NodeType.DATASET, "Images")
    assert (node.position.x, node.position.y) == (12.5, 40)
    assert result.sync_ops[0].kind == SyncKind.CREATE_NODE


def test_add_node_ids_are_unique(store):
    ids = {
        mutations.add_node(store, NodeInput(title="Same", type=NodeType.CONCEPT)).nodes_added[0].id
        for _ in range(20)
    }
    assert len(ids) == 20


def test_add_node_without_position_lands_in_random_area(store):
    left, top, width, height = RANDOM_AREA
    result = mutations.add_node(
        store, NodeInput(title="X", type=NodeType.TOOL), rng=random.Random(7)
    )
    position = result.nodes_added[0].position

    assert left <= position.x <= left + width
    assert top <= position.y <= top + height


@pytest.mark.parametrize("title", ["", "   ", "\t\n"])
def test_add_node_blank_title_rejected(store, title):
    with pytest.raises(ValidationError) as exc_info:
        mutations.add_node(store, NodeInput(title=title, type=NodeType.CONCEPT))

    assert exc_info.value.field == "title"
    assert store.is_empty


def test_add_node_keeps_title_as_given(store):
    result = mutations.add_node(store, NodeInput(title="  padded  ", type=NodeType.CONCEPT))
    assert result.nodes_added[0].title == "  padded  "


# =============================================================================
# UPDATE / MOVE
# =============================================================================

def test_update_node_changes_only_given_fields(store):
    node = make_node("Old", NodeType.PAPER)
    node.description = "keep me"
    store.add_node(node)

    result = mutations.update_node(store, node.id, NodeUpdate(title="New"))

    updated = store.get_node(node.id)
    assert updated.title == "New"
    assert updated.type == NodeType.PAPER
    assert updated.description == "keep me"
    assert result.sync_ops[0].kind == SyncKind.UPDATE_NODE


def test_update_node_blank_title_rejected(store):
    node = make_node("Old")
    store.add_node(node)

    with pytest.raises(ValidationError):
        mutations.update_node(store, node.id, NodeUpdate(title=" "))
    assert store.get_node(node.id).title == "Old"


def test_update_unknown_node_raises(store):
    with pytest.raises(NodeNotFoundError):
        mutations.update_node(store, "ghost", NodeUpdate(title="x"))


def test_update_provisional_node_is_not_synced(store):
    node = make_node("Suggestion", is_recommendation=True)
    store.add_node(node)

    result = mutations.update_node(store, node.id, NodeUpdate(description="d"))

    assert result.sync_ops == []


def test_move_node_clear_drop_is_stored_verbatim(store):
    a, b = make_node("A", x=0, y=0), make_node("B", x=1000, y=1000)
    store.add_node(a)
    store.add_node(b)

    result = mutations.move_node(store, a.id, Position(x=300, y=0))

    assert result.placement.attempts == 0
    assert store.get_node(a.id).position == Position(x=300, y=0)


def test_move_node_resolves_overlap(store):
    a, b = make_node("A", x=0, y=0), make_node("B", x=500, y=500)
    store.add_node(a)
    store.add_node(b)

    result = mutations.move_node(store, a.id, Position(x=510, y=500))

    stored = store.get_node(a.id).position
    assert result.placement.resolved
    assert stored != Position(x=510, y=500)
    assert ((stored.x - 500) ** 2 + (stored.y - 500) ** 2) ** 0.5 >= 150


# =============================================================================
# DELETE WITH RECONNECTION
# =============================================================================

def test_delete_middle_of_chain_reconnects(chain_store):
    store, nodes = chain_store

    result = mutations.delete_node(store, nodes["b"].id)

    assert [n.title for n in store.iter_nodes()] == ["A", "C"]
    edges = store.get_all_edges()
    assert len(edges) == 1
    assert (edges[0].source, edges[0].target) == (nodes["a"].id, nodes["c"].id)
    assert edges[0].kind == EdgeKind.PERMANENT
    kinds = [op.kind for op in result.sync_ops]
    assert kinds == [SyncKind.DELETE_NODE, SyncKind.CREATE_EDGE]


@pytest.mark.parametrize("parents,children", [(0, 0), (1, 0), (0, 2), (2, 3), (3, 3)])
def test_delete_creates_parents_times_children_edges(store, parents, children):
    hub = make_node("Hub", x=0, y=0)
    store.add_node(hub)
    parent_nodes = [make_node(f"P{i}") for i in range(parents)]
    child_nodes = [make_node(f"C{i}") for i in range(children)]
    for node in parent_nodes + child_nodes:
        store.add_node(node)
    for p in parent_nodes:
        store.add_edge(EdgeData.create(p.id, hub.id))
    for c in child_nodes:
        store.add_edge(EdgeData.create(hub.id, c.id))
    edges_before = store.edge_count

    result = mutations.delete_node(store, hub.id)

    assert len(result.edges_added) == parents * children
    assert store.edge_count == edges_before - parents - children + parents * children
    pairs = {(e.source, e.target) for e in result.edges_added}
    assert pairs == {(p.id, c.id) for p in parent_nodes for c in child_nodes}


def test_delete_does_not_reconnect_through_provisional_edges(store):
    anchor = make_node("Anchor")
    hub = make_node("Hub")
    suggestion = make_node("S", is_recommendation=True)
    for node in (anchor, hub, suggestion):
        store.add_node(node)
    store.add_edge(EdgeData.create(anchor.id, hub.id))
    store.add_edge(EdgeData.create(hub.id, suggestion.id, kind=EdgeKind.RECOMMENDATION))

    result = mutations.delete_node(store, hub.id)

    assert result.edges_added == []
    assert store.edge_count == 0


def test_delete_unknown_node_raises(store):
    with pytest.raises(NodeNotFoundError):
        mutations.delete_node(store, "ghost")


# =============================================================================
# CONNECT / DELETE EDGE
# =============================================================================

def test_connect_existing_nodes(store):
    a, b = make_node("A"), make_node("B")
    store.add_node(a)
    store.add_node(b)

    result = mutations.connect(store, a.id, b.id)

    assert store.edge_count == 1
    assert result.edges_added[0].kind == EdgeKind.PERMANENT
    assert result.sync_ops[0].kind == SyncKind.CREATE_EDGE


def test_connect_missing_endpoint_leaves_graph_unchanged(store):
    a = make_node("A")
    store.add_node(a)

    with pytest.raises(NodeNotFoundError):
        mutations.connect(store, a.id, "ghost")
    assert store.edge_count == 0


def test_connect_self_rejected(store):
    a = make_node("A")
    store.add_node(a)

    with pytest.raises(ValidationError):
        mutations.connect(store, a.id, a.id)


def test_connect_provisional_rejected(store):
    a = make_node("A")
    s = make_node("S", is_recommendation=True)
    store.add_node(a)
    store.add_node(s)

    with pytest.raises(ValidationError):
        mutations.connect(store, a.id, s.id)


def test_delete_edge_never_reconnects(chain_store):
    store, nodes = chain_store
    edge = store.get_outgoing_edges(nodes["a"].id)[0]

    result = mutations.delete_edge(store, edge.id)

    assert store.edge_count == 1
    assert result.edges_added == []
    assert result.sync_ops[0].kind == SyncKind.DELETE_EDGE


def test_delete_unknown_edge_raises(store):
    with pytest.raises(EdgeNotFoundError):
        mutations.delete_edge(store, "ghost")
