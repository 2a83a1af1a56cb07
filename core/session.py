"""
LABBUDDY SESSION - Application State and the Write Path

MindMapSession is the one object the HTTP layer talks to. It owns the
graph store, the recommendation staging area and a small explicit AppState,
and turns every user action into:

    mutation (sync, atomic) -> mutation log -> event bus -> sync queue (fire-and-forget)

Error policy:
- ValidationError propagates: the caller sent bad input, nothing changed.
- NotFoundError becomes a logged warning and a no-op MutationResult whose
  missing_ids names the unknown id.
- CollaboratorError (recommendations, persistence) is logged at the call
  site; recommendations fall back to placeholders, persistence is ignored.
"""
import asyncio
import logging
from typing import Callable, List, Optional

import msgspec

from core import mutations
from core.graph_db import GraphInvariantError, GraphStore, NotFoundError
from core.llm import CollaboratorError
from core.ontology import EdgeKind
from core.mutations import MutationResult
from core.schemas import (
    EdgeData,
    MapData,
    NodeData,
    NodeInput,
    NodeUpdate,
    Position,
    ValidationError,
)
from core.search import search_nodes
from core.staging import RecommendationStaging, StagingRound, fallback_recommendations

logger = logging.getLogger("labbuddy.session")


class AppState(msgspec.Struct, kw_only=True):
    """Everything the UI needs besides the graph itself."""
    selected_node_id: Optional[str] = None
    editing_node_id: Optional[str] = None
    search_query: str = ""
    staging: Optional[StagingRound] = None
    recommendations_pending: bool = False


def _missing_id(error: NotFoundError) -> str:
    return getattr(error, "node_id", None) or getattr(error, "edge_id", None) or str(error)


class MindMapSession:
    """
    One user's mind map.

    Args:
        store: The graph store (a fresh one if omitted)
        sync: SyncQueue for the persistence collaborator (None = local only)
        recommender: Object with `async arecommend(anchor, nodes)`
        user_id: Owner of the map in the persistence collaborator
        mutation_logger: MutationLogger (the global one if omitted)
    """

    def __init__(
        self,
        store: Optional[GraphStore] = None,
        sync=None,
        recommender=None,
        user_id: str = "local",
        mutation_logger=None,
    ):
        self.store = store if store is not None else GraphStore()
        self.sync = sync
        self.recommender = recommender
        self.user_id = user_id
        self.staging = RecommendationStaging()
        self.state = AppState()

        if mutation_logger is None:
            from infrastructure.logger import get_logger
            mutation_logger = get_logger()
        self.mutation_logger = mutation_logger

    # =========================================================================
    # PLUMBING
    # =========================================================================

    def _commit(self, result: MutationResult, source: str = "session") -> MutationResult:
        """Log, publish and hand off sync ops for an applied result."""
        from infrastructure.event_bus import publish_mutation

        self.state.staging = self.staging.round
        self._forget_removed(result)
        if result.changed:
            self.mutation_logger.log_result(result)
            publish_mutation(result, source=source)
        if self.sync is not None and result.sync_ops:
            self.sync.submit(result.sync_ops)
        return result

    def _guarded(self, action: Callable[[], MutationResult]) -> MutationResult:
        try:
            result = action()
        except NotFoundError as e:
            missing = _missing_id(e)
            logger.warning(f"Ignoring operation on unknown id: {missing}")
            return MutationResult.missing(missing)
        return self._commit(result)

    def _forget_removed(self, result: MutationResult) -> None:
        removed = {n.id for n in result.nodes_removed}
        if self.state.selected_node_id in removed:
            self.state.selected_node_id = None
        if self.state.editing_node_id in removed:
            self.state.editing_node_id = None

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def add_node(self, data: NodeInput) -> MutationResult:
        return self._commit(mutations.add_node(self.store, data))

    def update_node(self, node_id: str, fields: NodeUpdate) -> MutationResult:
        result = self._guarded(lambda: mutations.update_node(self.store, node_id, fields))
        if self.state.editing_node_id == node_id and result.changed:
            self.state.editing_node_id = None
        return result

    def delete_node(self, node_id: str) -> MutationResult:
        """
        Delete a node with reconnection.

        Deleting the anchor of an open round declines the round first, so
        no suggestion is left pointing at a node that no longer exists.
        """
        def action() -> MutationResult:
            result = MutationResult()
            if self.staging.round is not None and self.staging.round.anchor_id == node_id:
                result.extend(self.staging.decline_all(self.store))
                self.state.recommendations_pending = False
            elif self.staging.pending_anchor_id == node_id:
                self.staging.decline_all(self.store)
                self.state.recommendations_pending = False
            result.extend(mutations.delete_node(self.store, node_id))
            if self.staging.round is not None and node_id in self.staging.round.node_ids:
                self.staging.round.node_ids.remove(node_id)
            return result

        return self._guarded(action)

    def connect(self, source_id: str, target_id: str) -> MutationResult:
        return self._guarded(lambda: mutations.connect(self.store, source_id, target_id))

    def delete_edge(self, edge_id: str) -> MutationResult:
        return self._guarded(lambda: mutations.delete_edge(self.store, edge_id))

    def end_drag(self, node_id: str, position: Position) -> MutationResult:
        return self._guarded(lambda: mutations.move_node(self.store, node_id, position))

    # =========================================================================
    # UI STATE
    # =========================================================================

    def select_node(self, node_id: Optional[str]) -> Optional[NodeData]:
        """Select a node (None clears). Unknown ids clear the selection."""
        node = self.store.find_node(node_id) if node_id else None
        if node_id and node is None:
            logger.warning(f"Cannot select unknown node {node_id}")
        self.state.selected_node_id = node.id if node else None
        return node

    def start_editing(self, node_id: str) -> bool:
        if not self.store.has_node(node_id):
            logger.warning(f"Cannot edit unknown node {node_id}")
            return False
        self.state.editing_node_id = node_id
        return True

    def set_search_query(self, query: str) -> List[NodeData]:
        self.state.search_query = query or ""
        return self.visible_nodes()

    def visible_nodes(self) -> List[NodeData]:
        """Nodes matching the current search query, in store order."""
        return search_nodes(self.store.iter_nodes(), self.state.search_query)

    def permanent_snapshot(self) -> MapData:
        """The graph without any staged suggestion (what gets saved)."""
        return MapData(
            nodes=[n for n in self.store.iter_nodes() if not n.is_recommendation],
            edges=[e for e in self.store.iter_edges() if e.kind == EdgeKind.PERMANENT],
        )

    # =========================================================================
    # RECOMMENDATIONS
    # =========================================================================

    async def request_recommendations(self, anchor_id: str) -> MutationResult:
        """
        Open a staging round for anchor_id and fill it.

        A response that arrives after the round was superseded or declined is
        discarded. On collaborator failure the round is filled with
        placeholders instead.

        Raises:
            ValidationError: The anchor is a provisional node
        """
        from infrastructure.event_bus import EventType, publish

        try:
            token, cleared = self.staging.begin(self.store, anchor_id)
        except NotFoundError as e:
            logger.warning(f"Recommendations requested for unknown node {anchor_id}")
            return MutationResult.missing(_missing_id(e))
        self._commit(cleared)
        self.state.recommendations_pending = True

        anchor = self.store.get_node(anchor_id)
        context = [n for n in self.store.iter_nodes() if not n.is_recommendation]

        try:
            recommender = self.recommender
            if recommender is None:
                from core.assistant import RecommendationService
                recommender = self.recommender = RecommendationService()
            recommendations = await recommender.arecommend(anchor, context)
        except CollaboratorError as e:
            logger.error(f"Recommendation service failed, using placeholders: {e}")
            publish(EventType.RECOMMENDATION_FAILED, {"anchor_id": anchor_id, "error": str(e)})
            recommendations = fallback_recommendations(anchor)

        if self.staging.is_current(token):
            self.state.recommendations_pending = False
        result = self._commit(self.staging.offer(self.store, token, recommendations))
        if result.nodes_added:
            publish(EventType.RECOMMENDATIONS_OFFERED, {
                "anchor_id": anchor_id,
                "node_ids": [n.id for n in result.nodes_added],
            })
        return result

    def accept_recommendation(self, node_id: str) -> MutationResult:
        """
        Raises:
            ValidationError: node_id is not a pending suggestion
        """
        from infrastructure.event_bus import EventType, publish

        result = self._guarded(lambda: self.staging.accept(self.store, node_id))
        if result.nodes_added:
            publish(EventType.RECOMMENDATION_ACCEPTED, {
                "suggestion_id": node_id,
                "node_id": result.nodes_added[-1].id,
            })
        return result

    def decline_recommendations(self) -> MutationResult:
        from infrastructure.event_bus import EventType, publish

        result = self._commit(self.staging.decline_all(self.store))
        self.state.recommendations_pending = False
        if result.nodes_removed:
            publish(EventType.RECOMMENDATIONS_DECLINED, {
                "node_ids": [n.id for n in result.nodes_removed],
            })
        return result

    # =========================================================================
    # LOADING
    # =========================================================================

    async def load_from_backend(self) -> bool:
        """
        Replace the local graph with the persistence collaborator's copy.

        Edges whose endpoints were not loaded, and self-loops, are dropped.
        On PersistenceError the local graph is kept.

        Returns:
            True if the graph was replaced
        """
        if self.sync is None:
            return False
        backend = self.sync.backend
        try:
            nodes = await asyncio.to_thread(backend.load_nodes, self.user_id)
            edges = await asyncio.to_thread(backend.load_edges, self.user_id)
        except CollaboratorError as e:
            logger.error(f"Loading from persistence failed, keeping local graph: {e}")
            return False

        self._replace(MapData(nodes=nodes, edges=edges))
        return True

    def load_map(self, data: MapData) -> None:
        """
        Replace the local graph with a saved map.

        Staged suggestions and blank-title nodes in the saved data are ignored.

        Raises:
            ValidationError: The map has duplicate node ids
        """
        self._replace(MapData(
            nodes=[n for n in data.nodes if not n.is_recommendation],
            edges=[e for e in data.edges if e.kind == EdgeKind.PERMANENT],
        ))

    def _replace(self, data: MapData) -> None:
        from infrastructure.event_bus import EventType, publish

        nodes: List[NodeData] = []
        for node in data.nodes:
            if node.title.strip():
                nodes.append(node)
            else:
                logger.warning(f"Dropping node {node.id}: blank title")

        node_ids = {n.id for n in nodes}
        edges: List[EdgeData] = []
        for edge in data.edges:
            if edge.source not in node_ids or edge.target not in node_ids:
                logger.warning(f"Dropping dangling edge {edge.id}: {edge.source} -> {edge.target}")
            elif edge.source == edge.target:
                logger.warning(f"Dropping self-loop edge {edge.id}")
            else:
                edges.append(edge)

        try:
            self.store.load(MapData(nodes=nodes, edges=edges))
        except GraphInvariantError as e:
            raise ValidationError(str(e)) from e

        self.staging.decline_all(self.store)
        self.state = AppState(search_query=self.state.search_query)
        self.mutation_logger.log_graph_loaded(self.store.node_count, self.store.edge_count)
        publish(EventType.GRAPH_LOADED, {
            "node_count": self.store.node_count,
            "edge_count": self.store.edge_count,
        })
