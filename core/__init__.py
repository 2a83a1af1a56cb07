"""
LABBUDDY CORE - Central exports for core functionality.

This package provides:
- The graph store and its mutations (GraphStore, add/update/delete/connect)
- Layout helpers (overlap resolution, recommendation rows)
- Recommendation staging and the session that ties it all together
- LLM interfaces (StructuredLLM, RecommendationService, AssistantService)
"""

from core.ontology import NodeType, EdgeKind, AttachmentType, FileType
from core.schemas import (
    Position,
    NodeData,
    EdgeData,
    NodeInput,
    NodeUpdate,
    MapData,
    Recommendation,
    ValidationError,
)
from core.graph_db import (
    GraphStore,
    GraphError,
    NotFoundError,
    NodeNotFoundError,
    EdgeNotFoundError,
)
from core.mutations import MutationResult, SyncKind, SyncOp
from core.llm import (
    StructuredLLM,
    CollaboratorError,
    LLMError,
    RateLimitError,
    get_llm,
    set_llm,
    reset_llm,
)
from core.session import MindMapSession, AppState

__all__ = [
    # Vocabulary
    "NodeType",
    "EdgeKind",
    "AttachmentType",
    "FileType",
    # Data
    "Position",
    "NodeData",
    "EdgeData",
    "NodeInput",
    "NodeUpdate",
    "MapData",
    "Recommendation",
    "ValidationError",
    # Graph
    "GraphStore",
    "GraphError",
    "NotFoundError",
    "NodeNotFoundError",
    "EdgeNotFoundError",
    "MutationResult",
    "SyncKind",
    "SyncOp",
    # LLM
    "StructuredLLM",
    "CollaboratorError",
    "LLMError",
    "RateLimitError",
    "get_llm",
    "set_llm",
    "reset_llm",
    # Session
    "MindMapSession",
    "AppState",
]
