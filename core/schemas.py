"""
LABBUDDY SCHEMAS - The Grammar of the Mind Map

If ontology.py is the Dictionary (defining the words we can use),
schemas.py is the Grammar (defining how we structure sentences).

This module defines the data structures that flow through the system:
- Position: Canvas coordinates of a node
- NodeData / EdgeData: The payloads stored in the graph
- NodeInput / NodeUpdate: Validated user input for mutations
- Recommendation: One AI-suggested node (raw, before staging)
- Attachment / SavedMap: Secondary entities owned by collaborators
- Serialization helpers for the API and the persistence layer

Design Principles:
1. STRICT TYPING: msgspec.Struct, validated once at the boundary
2. CAMEL-CASE WIRE FORMAT: rename="camel" so the browser sees isRecommendation
3. KW_ONLY: Enforce keyword arguments to prevent positional mix-ups
4. IMMUTABLE IDS: Node/edge IDs are set once and never change
"""
import msgspec
from typing import Optional, Dict, Any, List, Type, TypeVar
from datetime import datetime, timezone
import uuid

from core.ontology import (
    NodeType,
    EdgeKind,
    AttachmentType,
    FileType,
    edge_style_for,
)


T = TypeVar("T")


# =============================================================================
# EXCEPTIONS
# =============================================================================

class ValidationError(Exception):
    """
    Raised when input to a mutation is malformed (blank title, unknown type).

    Rejected synchronously, before the graph is touched.
    """
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def now_utc() -> str:
    """Fast UTC timestamp as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def generate_id() -> str:
    """Generate a new UUID hex string for node/edge IDs."""
    return uuid.uuid4().hex


# =============================================================================
# GEOMETRY
# =============================================================================

class Position(msgspec.Struct, kw_only=True):
    """Canvas coordinates. Always defined once a node exists."""
    x: float = 0.0
    y: float = 0.0


# =============================================================================
# NODE DATA (The Core Graph Payload)
# =============================================================================

class NodeData(msgspec.Struct, kw_only=True, rename="camel"):
    """
    The payload attached to every node in the rustworkx graph.

    `is_recommendation` is True while the node is a provisional AI suggestion
    awaiting accept/decline. Provisional nodes are never persisted.
    """
    # === Identity ===
    id: str
    title: str
    type: NodeType

    # === Content ===
    description: str = ""
    position: Position = msgspec.field(default_factory=Position)

    # === Staging ===
    is_recommendation: bool = False

    # === Provenance ===
    created_at: str = msgspec.field(default_factory=now_utc)
    updated_at: str = msgspec.field(default_factory=now_utc)

    def touch(self) -> None:
        """Refresh the updated_at timestamp."""
        self.updated_at = now_utc()

    @classmethod
    def create(
        cls,
        title: str,
        type: NodeType,
        description: str = "",
        position: Optional[Position] = None,
        **kwargs
    ) -> "NodeData":
        """Factory method to create a new NodeData with optional custom ID."""
        node_id = kwargs.pop("id", None) or generate_id()
        return cls(
            id=node_id,
            title=title,
            type=type,
            description=description,
            position=position if position is not None else Position(),
            **kwargs
        )


# =============================================================================
# EDGE DATA (The Graph Relationship Payload)
# =============================================================================

class EdgeData(msgspec.Struct, kw_only=True, rename="camel"):
    """
    The payload attached to every edge in the rustworkx graph.

    Edges are thin: identity, endpoints, and the style metadata that tells
    the canvas whether this is a committed or a staged relationship.
    """
    id: str
    source: str
    target: str
    kind: EdgeKind = EdgeKind.PERMANENT
    style: Dict[str, Any] = msgspec.field(default_factory=dict)
    created_at: str = msgspec.field(default_factory=now_utc)

    @property
    def is_recommendation(self) -> bool:
        return self.kind == EdgeKind.RECOMMENDATION

    @classmethod
    def create(
        cls,
        source: str,
        target: str,
        kind: EdgeKind = EdgeKind.PERMANENT,
        **kwargs
    ) -> "EdgeData":
        """Factory method to create an EdgeData with default styling."""
        edge_id = kwargs.pop("id", None) or generate_id()
        style = kwargs.pop("style", None) or edge_style_for(kind)
        return cls(
            id=edge_id,
            source=source,
            target=target,
            kind=kind,
            style=style,
            **kwargs
        )


# =============================================================================
# MUTATION INPUTS
# =============================================================================

class NodeInput(msgspec.Struct, kw_only=True, rename="camel"):
    """Input to AddNode. Position is optional; a random one is assigned."""
    title: str
    type: NodeType
    description: str = ""
    position: Optional[Position] = None


class NodeUpdate(msgspec.Struct, kw_only=True, rename="camel"):
    """Input to UpdateNode. None means "leave unchanged"."""
    title: Optional[str] = None
    type: Optional[NodeType] = None
    description: Optional[str] = None

    def is_empty(self) -> bool:
        return self.title is None and self.type is None and self.description is None


def validate_title(title: Optional[str]) -> str:
    """Return the title unchanged, or raise ValidationError if it is blank."""
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Title is required", field="title")
    return title


# =============================================================================
# RECOMMENDATIONS (From the text-generation collaborator)
# =============================================================================

class Recommendation(msgspec.Struct, kw_only=True):
    """
    One suggested node as returned by the recommendation service.

    `type` stays a raw string here; staging maps it onto NodeType and falls
    back to Concept so one odd suggestion does not sink the whole round.
    """
    title: str
    type: str
    description: str = ""
    reasoning: str = ""


class RecommendationsResponse(msgspec.Struct, kw_only=True):
    """Wire shape of POST /api/ai-recommendations."""
    recommendations: List[Recommendation]


# =============================================================================
# ATTACHMENTS & SAVED MAPS (Collaborator-owned entities)
# =============================================================================

class Attachment(msgspec.Struct, kw_only=True, rename="camel"):
    """Metadata of a link, image or file attached to a node."""
    id: str
    node_id: str
    type: AttachmentType
    name: str
    url: str
    file_type: Optional[FileType] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    created_at: str = msgspec.field(default_factory=now_utc)


class AttachmentInput(msgspec.Struct, kw_only=True, rename="camel"):
    node_id: str
    type: AttachmentType
    name: str
    url: str
    file_type: Optional[FileType] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None


class AttachmentUpdate(msgspec.Struct, kw_only=True, rename="camel"):
    name: Optional[str] = None
    url: Optional[str] = None
    file_type: Optional[FileType] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None


class MapData(msgspec.Struct, kw_only=True):
    """A full graph snapshot: ordered nodes and edges."""
    nodes: List[NodeData] = msgspec.field(default_factory=list)
    edges: List[EdgeData] = msgspec.field(default_factory=list)


def validate_map_data(data: MapData) -> MapData:
    """
    Check a map coming from outside: every title non-blank, node ids unique.

    Raises:
        ValidationError: Naming the first offending node
    """
    seen = set()
    for node in data.nodes:
        if node.id in seen:
            raise ValidationError(f"Duplicate node id in map: {node.id}", field="data")
        seen.add(node.id)
        if not node.title.strip():
            raise ValidationError(f"Node {node.id} has a blank title", field="data")
    return data


class SavedMap(msgspec.Struct, kw_only=True, rename="camel"):
    """A named snapshot of a user's mind map, stored as one JSON document."""
    id: str
    user_id: str
    title: str
    data: MapData
    created_at: str = msgspec.field(default_factory=now_utc)
    updated_at: str = msgspec.field(default_factory=now_utc)


class SavedMapInput(msgspec.Struct, kw_only=True, rename="camel"):
    user_id: str
    title: str
    data: MapData = msgspec.field(default_factory=MapData)


class SavedMapUpdate(msgspec.Struct, kw_only=True, rename="camel"):
    title: Optional[str] = None
    data: Optional[MapData] = None


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

# Pre-compiled encoder, reused across the application
_encoder = msgspec.json.Encoder()

_map_data_decoder = msgspec.json.Decoder(type=MapData)


def encode(obj: Any) -> bytes:
    """Serialize any schema object (or builtin) to JSON bytes."""
    return _encoder.encode(obj)


def deserialize_map_data(data: bytes) -> MapData:
    return _map_data_decoder.decode(data)


def to_builtins(obj: Any) -> Any:
    """Convert schema objects to plain dicts/lists using the wire names."""
    return msgspec.to_builtins(obj)


def convert(obj: Any, type: Type[T]) -> T:
    """
    Convert decoded JSON (dicts/lists) into a schema type.

    This is the boundary check: any type mismatch, unknown enum value or
    missing required field becomes a ValidationError.
    """
    try:
        return msgspec.convert(obj, type=type)
    except msgspec.ValidationError as e:
        raise ValidationError(str(e)) from e
