"""
LABBUDDY GRAPH STORE - The Single Source of Truth for the Canvas

Holds the ordered collection of nodes and edges the canvas renders. It
bridges the mind map's string ids with rustworkx's integer indices:

Architecture (The Bridge Pattern):
  Python Layer (Mutation Operations)
  - Uses string ids: "3f2a...", "9b1c..."
  - Calls: store.add_node(data), store.remove_node("3f2a...")

  Bridge Layer (This File)
  - _node_map: Dict[str, int]  (node id -> index), insertion ordered
  - _edge_map: Dict[str, int]  (edge id -> edge index), insertion ordered
  - _edge_seq: Dict[str, int]  (edge id -> insertion sequence number)

  Rust Layer (rustworkx.PyDiGraph)
  - Uses integer indices, reused after removal

rustworkx recycles indices of removed nodes, so read order never comes from
the Rust side: the bridge dicts carry insertion order, which is the order the
search filter and the canvas rely on. Adjacency queries are answered by
rustworkx and re-sorted by _edge_seq.

Write contract:
- Every public write validates first and mutates second. A write that raises
  has not changed the store.
- Writes are only issued by core.mutations and core.staging; everything else
  reads.
"""
import rustworkx as rx
from typing import Dict, List, Optional, Iterator

from core.schemas import NodeData, EdgeData, MapData
from core.ontology import EdgeKind


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class GraphError(Exception):
    """Base exception for graph operations."""
    pass


class NotFoundError(GraphError):
    """An operation referenced an id absent from the store."""
    pass


class NodeNotFoundError(NotFoundError):
    """Raised when a node id is not in the graph."""
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class EdgeNotFoundError(NotFoundError):
    """Raised when an edge id is not in the graph."""
    def __init__(self, edge_id: str):
        self.edge_id = edge_id
        super().__init__(f"Edge not found: {edge_id}")


class DuplicateNodeError(GraphError):
    """Raised when attempting to add a node with existing ID."""
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node already exists: {node_id}")


class GraphInvariantError(GraphError):
    """Raised when a write would break a store invariant (self-loop, dangling edge)."""
    pass


# =============================================================================
# GRAPH STORE
# =============================================================================

class GraphStore:
    """
    In-memory mind map graph backed by rustworkx.

    Usage:
        store = GraphStore()

        a = NodeData.create(title="Transformers", type=NodeType.CONCEPT)
        b = NodeData.create(title="Attention Is All You Need", type=NodeType.PAPER)
        store.add_node(a)
        store.add_node(b)
        store.add_edge(EdgeData.create(a.id, b.id))

        store.get_outgoing_edges(a.id)  # [EdgeData(...)]

    Parallel edges are allowed (multigraph): deleting a node reconnects every
    parent to every child, and two reconnections can share endpoints.

    Thread Safety:
        NOT thread-safe. All writes happen on the event loop thread.
    """

    def __init__(self):
        self._graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=True)
        self._node_map: Dict[str, int] = {}
        self._edge_map: Dict[str, int] = {}
        self._edge_seq: Dict[str, int] = {}
        self._next_seq = 0

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def node_count(self) -> int:
        return self._graph.num_nodes()

    @property
    def edge_count(self) -> int:
        return self._graph.num_edges()

    @property
    def is_empty(self) -> bool:
        return self.node_count == 0

    # =========================================================================
    # NODE OPERATIONS
    # =========================================================================

    def add_node(self, data: NodeData) -> int:
        """
        Add a node to the graph.

        Returns:
            The rustworkx index of the new node

        Raises:
            DuplicateNodeError: If the node id is already present
        """
        if data.id in self._node_map:
            raise DuplicateNodeError(data.id)

        idx = self._graph.add_node(data)
        self._node_map[data.id] = idx
        return idx

    def get_node(self, node_id: str) -> NodeData:
        """
        Retrieve a node by id.

        Raises:
            NodeNotFoundError: If node doesn't exist
        """
        if node_id not in self._node_map:
            raise NodeNotFoundError(node_id)
        return self._graph[self._node_map[node_id]]

    def find_node(self, node_id: str) -> Optional[NodeData]:
        """Like get_node, but returns None for unknown ids."""
        idx = self._node_map.get(node_id)
        return self._graph[idx] if idx is not None else None

    def has_node(self, node_id: str) -> bool:
        return node_id in self._node_map

    def replace_node(self, data: NodeData) -> None:
        """
        Replace a node's payload in place (same id, same position in order).

        Raises:
            NodeNotFoundError: If node doesn't exist
        """
        if data.id not in self._node_map:
            raise NodeNotFoundError(data.id)
        self._graph[self._node_map[data.id]] = data

    def remove_node(self, node_id: str) -> NodeData:
        """
        Remove a node and every edge touching it.

        Returns:
            The removed NodeData

        Raises:
            NodeNotFoundError: If node doesn't exist
        """
        if node_id not in self._node_map:
            raise NodeNotFoundError(node_id)

        idx = self._node_map[node_id]
        data = self._graph[idx]

        for _, _, edge in list(self._graph.in_edges(idx)) + list(self._graph.out_edges(idx)):
            self._forget_edge(edge.id)

        # rustworkx drops the incident edges together with the node
        self._graph.remove_node(idx)
        del self._node_map[node_id]
        return data

    def iter_nodes(self) -> Iterator[NodeData]:
        """Iterate over all nodes in insertion order."""
        for idx in self._node_map.values():
            yield self._graph[idx]

    def get_all_nodes(self) -> List[NodeData]:
        return list(self.iter_nodes())

    def get_provisional_nodes(self) -> List[NodeData]:
        """Nodes currently staged as AI suggestions."""
        return [n for n in self.iter_nodes() if n.is_recommendation]

    # =========================================================================
    # EDGE OPERATIONS
    # =========================================================================

    def add_edge(self, edge: EdgeData) -> int:
        """
        Add an edge between two existing nodes.

        Raises:
            NodeNotFoundError: If source or target node doesn't exist
            GraphInvariantError: On a self-loop or a reused edge id
        """
        if edge.source not in self._node_map:
            raise NodeNotFoundError(edge.source)
        if edge.target not in self._node_map:
            raise NodeNotFoundError(edge.target)
        if edge.source == edge.target:
            raise GraphInvariantError(
                f"Cannot add self-loop edge {edge.source} -> {edge.target}"
            )
        if edge.id in self._edge_map:
            raise GraphInvariantError(f"Edge already exists: {edge.id}")

        edge_idx = self._graph.add_edge(
            self._node_map[edge.source],
            self._node_map[edge.target],
            edge,
        )
        self._edge_map[edge.id] = edge_idx
        self._edge_seq[edge.id] = self._next_seq
        self._next_seq += 1
        return edge_idx

    def get_edge(self, edge_id: str) -> EdgeData:
        """
        Raises:
            EdgeNotFoundError: If edge doesn't exist
        """
        if edge_id not in self._edge_map:
            raise EdgeNotFoundError(edge_id)
        return self._graph.get_edge_data_by_index(self._edge_map[edge_id])

    def has_edge(self, edge_id: str) -> bool:
        return edge_id in self._edge_map

    def has_connection(self, source_id: str, target_id: str) -> bool:
        """True if at least one edge runs source -> target."""
        if source_id not in self._node_map or target_id not in self._node_map:
            return False
        return self._graph.has_edge(self._node_map[source_id], self._node_map[target_id])

    def remove_edge(self, edge_id: str) -> EdgeData:
        """
        Remove an edge by id.

        Raises:
            EdgeNotFoundError: If edge doesn't exist
        """
        if edge_id not in self._edge_map:
            raise EdgeNotFoundError(edge_id)
        edge_idx = self._edge_map[edge_id]
        data = self._graph.get_edge_data_by_index(edge_idx)
        self._forget_edge(edge_id)
        self._graph.remove_edge_from_index(edge_idx)
        return data

    def iter_edges(self) -> Iterator[EdgeData]:
        """Iterate over all edges in insertion order."""
        for edge_idx in self._edge_map.values():
            yield self._graph.get_edge_data_by_index(edge_idx)

    def get_all_edges(self) -> List[EdgeData]:
        return list(self.iter_edges())

    def get_incoming_edges(self, node_id: str) -> List[EdgeData]:
        """Edges whose target is node_id ("parent edges"), insertion ordered."""
        idx = self._node_map.get(node_id)
        return self._ordered(self._graph.in_edges(idx)) if idx is not None else []

    def get_outgoing_edges(self, node_id: str) -> List[EdgeData]:
        """Edges whose source is node_id ("child edges"), insertion ordered."""
        idx = self._node_map.get(node_id)
        return self._ordered(self._graph.out_edges(idx)) if idx is not None else []

    def get_provisional_edges(self) -> List[EdgeData]:
        return [e for e in self.iter_edges() if e.kind == EdgeKind.RECOMMENDATION]

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def snapshot(self) -> MapData:
        """Return the current nodes and edges (ordered) as MapData."""
        return MapData(nodes=self.get_all_nodes(), edges=self.get_all_edges())

    def clear(self) -> None:
        self._graph = rx.PyDiGraph(multigraph=True)
        self._node_map.clear()
        self._edge_map.clear()
        self._edge_seq.clear()

    def load(self, data: MapData) -> None:
        """
        Replace the whole graph with a snapshot.

        The snapshot is checked before anything is cleared, so a bad snapshot
        leaves the current graph untouched.

        Raises:
            GraphInvariantError: On duplicate node ids, dangling edges or
                self-loops in the snapshot
        """
        node_ids = set()
        for node in data.nodes:
            if node.id in node_ids:
                raise GraphInvariantError(f"Duplicate node id in snapshot: {node.id}")
            node_ids.add(node.id)

        edge_ids = set()
        for edge in data.edges:
            if edge.source not in node_ids or edge.target not in node_ids:
                raise GraphInvariantError(
                    f"Dangling edge in snapshot: {edge.source} -> {edge.target}"
                )
            if edge.source == edge.target:
                raise GraphInvariantError(f"Self-loop in snapshot: {edge.id}")
            if edge.id in edge_ids:
                raise GraphInvariantError(f"Duplicate edge id in snapshot: {edge.id}")
            edge_ids.add(edge.id)

        self.clear()
        for node in data.nodes:
            self.add_node(node)
        for edge in data.edges:
            self.add_edge(edge)

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _forget_edge(self, edge_id: str) -> None:
        del self._edge_map[edge_id]
        del self._edge_seq[edge_id]

    def _ordered(self, edge_list) -> List[EdgeData]:
        """Sort rustworkx (source, target, payload) triples by insertion order."""
        return sorted((edge for _, _, edge in edge_list), key=lambda e: self._edge_seq[e.id])
