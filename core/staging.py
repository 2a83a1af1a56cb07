"""
LABBUDDY STAGING - AI Suggestions as Provisional Graph Entities

A staging round is one recommendation request for one anchor node:

    begin(anchor)  ->  token          (any open round is declined first)
    offer(token, recommendations)     (N provisional nodes + N provisional edges)
    accept(node_id) | decline_all()   (round closes either way)

Accept is "choose one of N": the chosen suggestion becomes a permanent node
with a new id and one permanent edge from the anchor, and every sibling is
discarded.

Round tokens increase monotonically. A response that arrives for a token
that is no longer current (the user asked again, or declined) is dropped,
so a slow collaborator can never resurrect a superseded round.
"""
import logging
from typing import List, Optional, Sequence, Tuple

import msgspec

from core.graph_db import GraphStore, NodeNotFoundError
from core.layout import recommendation_row
from core.mutations import MutationResult, SyncKind, SyncOp
from core.ontology import EdgeKind, NodeType, parse_node_type
from core.schemas import EdgeData, NodeData, Recommendation, ValidationError

logger = logging.getLogger(__name__)


PLACEHOLDER_PREFIX = "[Placeholder]"


class StagingRound(msgspec.Struct, kw_only=True, rename="camel"):
    """The provisional entities produced by one recommendation request."""
    token: int
    anchor_id: str
    node_ids: List[str] = msgspec.field(default_factory=list)
    edge_ids: List[str] = msgspec.field(default_factory=list)


class RecommendationStaging:
    """
    Owns the open staging round and the round token counter.

    At most one round is open at a time. The token of a request in flight is
    `current_token`; `round` is set once its suggestions were offered.
    """

    def __init__(self):
        self._last_token = 0
        self.current_token: Optional[int] = None
        self.pending_anchor_id: Optional[str] = None
        self.round: Optional[StagingRound] = None

    @property
    def is_open(self) -> bool:
        return self.round is not None

    def is_current(self, token: int) -> bool:
        return self.current_token is not None and token == self.current_token

    # =========================================================================
    # ROUND LIFECYCLE
    # =========================================================================

    def begin(self, store: GraphStore, anchor_id: str) -> Tuple[int, MutationResult]:
        """
        Start a new round for anchor_id.

        Returns:
            (token, result of clearing the previous round)

        Raises:
            NodeNotFoundError: Anchor is not in the store
            ValidationError: Anchor is itself a provisional node
        """
        anchor = store.get_node(anchor_id)
        if anchor.is_recommendation:
            raise ValidationError(
                "Recommendations can only be requested for a permanent node",
                field="anchor",
            )

        cleared = self.decline_all(store)
        self._last_token += 1
        self.current_token = self._last_token
        self.pending_anchor_id = anchor_id
        return self.current_token, cleared

    def offer(
        self,
        store: GraphStore,
        token: int,
        recommendations: Sequence[Recommendation],
    ) -> MutationResult:
        """
        Materialize suggestions beneath the anchor.

        Stale tokens and rounds that were already offered yield an empty
        result. Unknown suggestion types become Concept.
        """
        if not self.is_current(token) or self.round is not None:
            logger.info(f"Dropping stale recommendation response (round {token})")
            return MutationResult()

        anchor_id = self.pending_anchor_id
        anchor = store.find_node(anchor_id)
        if anchor is None:
            self.current_token = None
            self.pending_anchor_id = None
            return MutationResult.missing(anchor_id)

        positions = recommendation_row(anchor.position, len(recommendations))
        nodes: List[NodeData] = []
        edges: List[EdgeData] = []
        for rec, position in zip(recommendations, positions):
            node_type = parse_node_type(rec.type)
            if node_type is None:
                logger.warning(f"Unknown suggestion type {rec.type!r}, using Concept")
                node_type = NodeType.CONCEPT
            node = NodeData.create(
                title=rec.title.strip() or "Untitled suggestion",
                type=node_type,
                description=rec.description,
                position=position,
                is_recommendation=True,
            )
            nodes.append(node)
            edges.append(EdgeData.create(anchor.id, node.id, kind=EdgeKind.RECOMMENDATION))

        for node in nodes:
            store.add_node(node)
        for edge in edges:
            store.add_edge(edge)

        self.round = StagingRound(
            token=token,
            anchor_id=anchor.id,
            node_ids=[n.id for n in nodes],
            edge_ids=[e.id for e in edges],
        )
        return MutationResult(nodes_added=nodes, edges_added=edges)

    def accept(self, store: GraphStore, node_id: str) -> MutationResult:
        """
        Promote one provisional node and discard the rest of the round.

        Raises:
            NodeNotFoundError: node_id is not in the store
            ValidationError: node_id is not part of the open round
        """
        chosen = store.get_node(node_id)
        if self.round is None or node_id not in self.round.node_ids:
            raise ValidationError(
                f"Node {node_id} is not a pending recommendation", field="node_id"
            )
        anchor_id = self.round.anchor_id

        result = self._clear(store)

        permanent = NodeData.create(
            title=chosen.title,
            type=chosen.type,
            description=chosen.description,
            position=chosen.position,
        )
        store.add_node(permanent)
        result.nodes_added.append(permanent)
        result.sync_ops.append(SyncOp(kind=SyncKind.CREATE_NODE, node=permanent))

        if store.has_node(anchor_id):
            edge = EdgeData.create(anchor_id, permanent.id)
            store.add_edge(edge)
            result.edges_added.append(edge)
            result.sync_ops.append(SyncOp(kind=SyncKind.CREATE_EDGE, edge=edge))
        else:
            logger.warning(f"Anchor {anchor_id} is gone; accepted node {permanent.id} left unconnected")

        return result

    def decline_all(self, store: GraphStore) -> MutationResult:
        """Drop the open round (if any) and invalidate any request in flight."""
        return self._clear(store)

    def _clear(self, store: GraphStore) -> MutationResult:
        result = MutationResult()
        result.edges_removed.extend(store.get_provisional_edges())
        for node in store.get_provisional_nodes():
            result.nodes_removed.append(store.remove_node(node.id))

        self.round = None
        self.current_token = None
        self.pending_anchor_id = None
        return result


# =============================================================================
# FALLBACK
# =============================================================================

def fallback_recommendations(anchor: NodeData) -> List[Recommendation]:
    """
    Three clearly labelled placeholders, offered when the recommendation
    service fails so the user still gets a round to accept or decline.
    """
    note = "The recommendation service is unavailable; edit this node once it is back."
    return [
        Recommendation(
            title=f"{PLACEHOLDER_PREFIX} Related concept to {anchor.title}",
            type=NodeType.CONCEPT.value,
            description=note,
            reasoning="Fallback suggestion",
        ),
        Recommendation(
            title=f"{PLACEHOLDER_PREFIX} Key paper on {anchor.title}",
            type=NodeType.PAPER.value,
            description=note,
            reasoning="Fallback suggestion",
        ),
        Recommendation(
            title=f"{PLACEHOLDER_PREFIX} Method used with {anchor.title}",
            type=NodeType.METHOD.value,
            description=note,
            reasoning="Fallback suggestion",
        ),
    ]
