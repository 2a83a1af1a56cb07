"""
LABBUDDY MUTATIONS - Every Write to the Graph Store Goes Through Here

Each operation takes the store plus validated input, applies its local
effects synchronously and returns a MutationResult describing what changed.
The result also carries the SyncOps the persistence adapter should replay
remotely; the store never waits on them.

Operations:
- add_node:    new permanent node, no edges
- update_node: title / type / description, never position
- delete_node: removes the node and reconnects every parent to every child
- connect:     one permanent edge between two existing nodes
- delete_edge: removes one edge, no reconnection
- move_node:   drag-end position write, after overlap resolution

Validation happens before the first write. An operation that raises
ValidationError or NotFoundError has not touched the store.
"""
import random
from enum import Enum
from typing import List, Optional

import msgspec

from core.graph_db import GraphStore, NodeNotFoundError
from core.layout import PlacementResult, random_position, resolve_overlap
from core.ontology import EdgeKind, parse_node_type
from core.schemas import (
    EdgeData,
    NodeData,
    NodeInput,
    NodeUpdate,
    Position,
    ValidationError,
    validate_title,
)


# =============================================================================
# RESULT TYPES
# =============================================================================

class SyncKind(str, Enum):
    """Remote operations the persistence adapter understands."""
    CREATE_NODE = "create_node"
    UPDATE_NODE = "update_node"
    DELETE_NODE = "delete_node"
    CREATE_EDGE = "create_edge"
    DELETE_EDGE = "delete_edge"


class SyncOp(msgspec.Struct, kw_only=True, frozen=True):
    """
    One remote write derived from a local mutation.

    node is set for create/update, edge for create_edge, target_id for the
    two deletes.
    """
    kind: SyncKind
    node: Optional[NodeData] = None
    edge: Optional[EdgeData] = None
    target_id: Optional[str] = None


class MutationResult(msgspec.Struct, kw_only=True):
    """What a mutation changed locally, and what must be synced remotely."""
    nodes_added: List[NodeData] = msgspec.field(default_factory=list)
    nodes_updated: List[NodeData] = msgspec.field(default_factory=list)
    nodes_removed: List[NodeData] = msgspec.field(default_factory=list)
    edges_added: List[EdgeData] = msgspec.field(default_factory=list)
    edges_removed: List[EdgeData] = msgspec.field(default_factory=list)
    sync_ops: List[SyncOp] = msgspec.field(default_factory=list)

    # Ids the caller referenced that were not in the store (no-op results)
    missing_ids: List[str] = msgspec.field(default_factory=list)
    placement: Optional[PlacementResult] = None

    @property
    def changed(self) -> bool:
        return bool(
            self.nodes_added or self.nodes_updated or self.nodes_removed
            or self.edges_added or self.edges_removed
        )

    def extend(self, other: "MutationResult") -> "MutationResult":
        """Fold another result into this one (in order) and return self."""
        self.nodes_added.extend(other.nodes_added)
        self.nodes_updated.extend(other.nodes_updated)
        self.nodes_removed.extend(other.nodes_removed)
        self.edges_added.extend(other.edges_added)
        self.edges_removed.extend(other.edges_removed)
        self.sync_ops.extend(other.sync_ops)
        self.missing_ids.extend(other.missing_ids)
        if other.placement is not None:
            self.placement = other.placement
        return self

    @classmethod
    def missing(cls, *ids: str) -> "MutationResult":
        return cls(missing_ids=list(ids))


# =============================================================================
# NODE OPERATIONS
# =============================================================================

def add_node(
    store: GraphStore,
    data: NodeInput,
    rng: Optional[random.Random] = None,
) -> MutationResult:
    """
    Create a permanent node with a fresh id.

    A missing position is replaced by a random point in the placement area.

    Raises:
        ValidationError: Blank title or a type outside the vocabulary
    """
    title = validate_title(data.title)
    node_type = parse_node_type(data.type)
    if node_type is None:
        raise ValidationError(f"Invalid node type: {data.type!r}", field="type")

    position = data.position if data.position is not None else random_position(rng)
    node = NodeData.create(
        title=title,
        type=node_type,
        description=data.description or "",
        position=Position(x=float(position.x), y=float(position.y)),
    )
    store.add_node(node)

    return MutationResult(
        nodes_added=[node],
        sync_ops=[SyncOp(kind=SyncKind.CREATE_NODE, node=node)],
    )


def update_node(store: GraphStore, node_id: str, fields: NodeUpdate) -> MutationResult:
    """
    Replace any of title, type and description on an existing node.

    Raises:
        NodeNotFoundError: Unknown id
        ValidationError: Blank title or invalid type in the update
    """
    current = store.get_node(node_id)

    title = current.title if fields.title is None else validate_title(fields.title)
    node_type = current.type
    if fields.type is not None:
        node_type = parse_node_type(fields.type)
        if node_type is None:
            raise ValidationError(f"Invalid node type: {fields.type!r}", field="type")
    description = current.description if fields.description is None else fields.description

    updated = msgspec.structs.replace(
        current,
        title=title,
        type=node_type,
        description=description,
    )
    updated.touch()
    store.replace_node(updated)

    result = MutationResult(nodes_updated=[updated])
    if not updated.is_recommendation:
        result.sync_ops.append(SyncOp(kind=SyncKind.UPDATE_NODE, node=updated))
    return result


def delete_node(store: GraphStore, node_id: str) -> MutationResult:
    """
    Remove a node and reconnect around it.

    For every permanent edge P -> node and every permanent edge node -> C a
    new permanent edge P -> C is created, so P parents and C children yield
    exactly P*C new edges. A candidate whose endpoints coincide (P == C) is
    skipped. Provisional edges touching the node are dropped without
    reconnection.

    Raises:
        NodeNotFoundError: Unknown id
    """
    node = store.get_node(node_id)

    parent_edges = [
        e for e in store.get_incoming_edges(node_id) if e.kind == EdgeKind.PERMANENT
    ]
    child_edges = [
        e for e in store.get_outgoing_edges(node_id) if e.kind == EdgeKind.PERMANENT
    ]
    removed_edges = store.get_incoming_edges(node_id) + store.get_outgoing_edges(node_id)

    reconnections = [
        EdgeData.create(parent.source, child.target)
        for parent in parent_edges
        for child in child_edges
        if parent.source != child.target
    ]

    store.remove_node(node_id)
    for edge in reconnections:
        store.add_edge(edge)

    result = MutationResult(
        nodes_removed=[node],
        edges_removed=removed_edges,
        edges_added=reconnections,
    )
    if not node.is_recommendation:
        result.sync_ops.append(SyncOp(kind=SyncKind.DELETE_NODE, target_id=node_id))
    result.sync_ops.extend(
        SyncOp(kind=SyncKind.CREATE_EDGE, edge=edge) for edge in reconnections
    )
    return result


def move_node(store: GraphStore, node_id: str, position: Position) -> MutationResult:
    """
    Store the final position of a dragged node.

    The drop point is first run through overlap resolution against every
    other node; the resolved position is what gets stored.

    Raises:
        NodeNotFoundError: Unknown id
    """
    current = store.get_node(node_id)
    others = [n.position for n in store.iter_nodes() if n.id != node_id]
    placement = resolve_overlap(Position(x=float(position.x), y=float(position.y)), others)

    moved = msgspec.structs.replace(current, position=placement.position)
    moved.touch()
    store.replace_node(moved)

    result = MutationResult(nodes_updated=[moved], placement=placement)
    if not moved.is_recommendation:
        result.sync_ops.append(SyncOp(kind=SyncKind.UPDATE_NODE, node=moved))
    return result


# =============================================================================
# EDGE OPERATIONS
# =============================================================================

def connect(store: GraphStore, source_id: str, target_id: str) -> MutationResult:
    """
    Add one permanent edge source -> target.

    Raises:
        NodeNotFoundError: Either endpoint is missing
        ValidationError: source == target, or an endpoint is provisional
    """
    for node_id in (source_id, target_id):
        node = store.find_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        if node.is_recommendation:
            raise ValidationError(
                f"Cannot connect provisional node {node_id}; accept it first",
                field="source" if node_id == source_id else "target",
            )
    if source_id == target_id:
        raise ValidationError("An edge cannot connect a node to itself", field="target")

    edge = EdgeData.create(source_id, target_id)
    store.add_edge(edge)

    return MutationResult(
        edges_added=[edge],
        sync_ops=[SyncOp(kind=SyncKind.CREATE_EDGE, edge=edge)],
    )


def delete_edge(store: GraphStore, edge_id: str) -> MutationResult:
    """
    Remove one edge. Node deletion reconnects; edge deletion never does.

    Raises:
        EdgeNotFoundError: Unknown id
    """
    edge = store.remove_edge(edge_id)

    result = MutationResult(edges_removed=[edge])
    if edge.kind == EdgeKind.PERMANENT:
        result.sync_ops.append(SyncOp(kind=SyncKind.DELETE_EDGE, target_id=edge_id))
    return result
