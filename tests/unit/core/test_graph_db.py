"""
Unit tests for core/graph_db.py - GraphStore

Tests the graph store including:
- Node creation, retrieval, replacement and removal
- Edge creation with endpoint and self-loop checks
- Insertion order of nodes and edges
- Snapshot load validation
"""
import pytest

from core.graph_db import (
    DuplicateNodeError,
    EdgeNotFoundError,
    GraphInvariantError,
    GraphStore,
    NodeNotFoundError,
)
from core.ontology import EdgeKind, NodeType
from core.schemas import EdgeData, MapData
from tests.helpers import make_node


# =============================================================================
# NODE OPERATIONS TESTS
# =============================================================================

def test_add_node_creates_node(store):
    node = make_node("Transformers")

    store.add_node(node)

    assert store.node_count == 1
    assert store.has_node(node.id)
    assert store.get_node(node.id).title == "Transformers"


def test_add_node_duplicate_id_fails(store):
    node = make_node("Transformers")
    store.add_node(node)

    with pytest.raises(DuplicateNodeError) as exc_info:
        store.add_node(node)

    assert node.id in str(exc_info.value)
    assert store.node_count == 1


def test_get_node_missing_raises(store):
    with pytest.raises(NodeNotFoundError) as exc_info:
        store.get_node("nope")
    assert exc_info.value.node_id == "nope"


def test_find_node_returns_none_for_unknown(store):
    assert store.find_node("nope") is None


def test_replace_node_keeps_order(store):
    a, b = make_node("A"), make_node("B")
    store.add_node(a)
    store.add_node(b)

    store.replace_node(make_node("A2", id=a.id))

    assert [n.title for n in store.iter_nodes()] == ["A2", "B"]


def test_replace_missing_node_raises(store):
    with pytest.raises(NodeNotFoundError):
        store.replace_node(make_node("Ghost"))


def test_remove_node_drops_incident_edges(chain_store):
    store, nodes = chain_store

    removed = store.remove_node(nodes["b"].id)

    assert removed.id == nodes["b"].id
    assert store.node_count == 2
    assert store.edge_count == 0
    assert store.get_all_edges() == []


def test_nodes_iterate_in_insertion_order_after_removal(store):
    nodes = [make_node(t) for t in "ABCD"]
    for node in nodes:
        store.add_node(node)
    store.remove_node(nodes[1].id)
    store.add_node(make_node("E"))

    assert [n.title for n in store.iter_nodes()] == ["A", "C", "D", "E"]


# =============================================================================
# EDGE OPERATIONS TESTS
# =============================================================================

def test_add_edge_between_existing_nodes(store):
    a, b = make_node("A"), make_node("B")
    store.add_node(a)
    store.add_node(b)

    edge = EdgeData.create(a.id, b.id)
    store.add_edge(edge)

    assert store.edge_count == 1
    assert store.get_edge(edge.id).source == a.id
    assert store.has_connection(a.id, b.id)
    assert not store.has_connection(b.id, a.id)


def test_add_edge_missing_endpoint_fails(store):
    a = make_node("A")
    store.add_node(a)

    with pytest.raises(NodeNotFoundError) as exc_info:
        store.add_edge(EdgeData.create(a.id, "missing"))

    assert exc_info.value.node_id == "missing"
    assert store.edge_count == 0


def test_add_edge_self_loop_fails(store):
    a = make_node("A")
    store.add_node(a)

    with pytest.raises(GraphInvariantError):
        store.add_edge(EdgeData.create(a.id, a.id))


def test_parallel_edges_allowed(store):
    a, b = make_node("A"), make_node("B")
    store.add_node(a)
    store.add_node(b)

    store.add_edge(EdgeData.create(a.id, b.id))
    store.add_edge(EdgeData.create(a.id, b.id))

    assert store.edge_count == 2


def test_remove_edge(chain_store):
    store, nodes = chain_store
    edge = store.get_outgoing_edges(nodes["a"].id)[0]

    store.remove_edge(edge.id)

    assert not store.has_edge(edge.id)
    assert store.node_count == 3
    with pytest.raises(EdgeNotFoundError):
        store.remove_edge(edge.id)


def test_incoming_and_outgoing_edges(chain_store):
    store, nodes = chain_store

    incoming = store.get_incoming_edges(nodes["b"].id)
    outgoing = store.get_outgoing_edges(nodes["b"].id)

    assert [e.source for e in incoming] == [nodes["a"].id]
    assert [e.target for e in outgoing] == [nodes["c"].id]


def test_adjacency_keeps_insertion_order_with_reused_indices(store):
    hub, x, y, z = (make_node(t) for t in ("Hub", "X", "Y", "Z"))
    for node in (hub, x, y, z):
        store.add_node(node)
    first = EdgeData.create(hub.id, x.id)
    doomed = EdgeData.create(hub.id, y.id)
    store.add_edge(first)
    store.add_edge(doomed)
    store.remove_edge(doomed.id)
    # rustworkx may hand the freed edge index to the next edge
    later = EdgeData.create(hub.id, z.id)
    earlier_parent = EdgeData.create(z.id, x.id)
    store.add_edge(later)
    store.add_edge(earlier_parent)

    assert [e.id for e in store.get_outgoing_edges(hub.id)] == [first.id, later.id]
    assert [e.id for e in store.get_incoming_edges(x.id)] == [first.id, earlier_parent.id]
    assert store.get_incoming_edges("missing") == []


def test_remove_node_forgets_both_edge_directions(chain_store):
    store, nodes = chain_store

    store.remove_node(nodes["b"].id)

    assert store.edge_count == 0
    assert store.get_all_edges() == []
    assert store.get_outgoing_edges(nodes["a"].id) == []
    assert not store.has_connection(nodes["a"].id, nodes["b"].id)


def test_has_connection_unknown_nodes(store):
    assert not store.has_connection("nope", "nada")


def test_provisional_queries(store):
    anchor = make_node("Anchor")
    suggestion = make_node("Suggestion", is_recommendation=True)
    store.add_node(anchor)
    store.add_node(suggestion)
    store.add_edge(EdgeData.create(anchor.id, suggestion.id, kind=EdgeKind.RECOMMENDATION))

    assert [n.id for n in store.get_provisional_nodes()] == [suggestion.id]
    assert len(store.get_provisional_edges()) == 1


def test_edge_style_follows_kind():
    permanent = EdgeData.create("a", "b")
    staged = EdgeData.create("a", "b", kind=EdgeKind.RECOMMENDATION)

    assert not permanent.is_recommendation
    assert staged.is_recommendation
    assert staged.style.get("animated") is True
    assert "animated" not in permanent.style


# =============================================================================
# SNAPSHOT TESTS
# =============================================================================

def test_snapshot_and_load_roundtrip(chain_store):
    store, _ = chain_store
    snapshot = store.snapshot()

    other = GraphStore()
    other.load(snapshot)

    assert [n.id for n in other.iter_nodes()] == [n.id for n in store.iter_nodes()]
    assert [e.id for e in other.iter_edges()] == [e.id for e in store.iter_edges()]


def test_load_rejects_dangling_edge_and_keeps_graph(chain_store):
    store, nodes = chain_store
    bad = MapData(
        nodes=[make_node("X")],
        edges=[EdgeData.create("x", "y")],
    )

    with pytest.raises(GraphInvariantError):
        store.load(bad)

    assert store.node_count == 3
    assert store.has_node(nodes["a"].id)


def test_load_rejects_duplicate_node_ids(store):
    node = make_node("A")
    with pytest.raises(GraphInvariantError):
        store.load(MapData(nodes=[node, make_node("B", id=node.id)]))


def test_clear_empties_store(chain_store):
    store, _ = chain_store
    store.clear()
    assert store.is_empty
    assert store.edge_count == 0


def test_node_type_enum_values():
    assert [t.value for t in NodeType] == [
        "Concept", "Paper", "Dataset", "Tool", "Person", "Organization", "Event", "Method",
    ]
