"""
LABBUDDY ONTOLOGY - The Dictionary of the Mind Map

If schemas.py is the Grammar (how we structure sentences),
ontology.py is the Dictionary (the words we can use).

This module defines:
- Enums: The vocabulary (NodeType, EdgeKind, AttachmentType, FileType)
- Edge styles: How permanent vs recommendation edges are drawn
- Parsing helpers that validate free-form strings against the vocabulary

Key Principle: the node-type set is CLOSED. Strings coming from the API,
the persistence layer, an import file or an LLM response are converted
to NodeType exactly once, at the boundary. The rest of the core never
sees an unvalidated type string.
"""
from typing import Dict, Any, Optional
from enum import Enum


# =============================================================================
# ENUMS (The Vocabulary)
# =============================================================================

class NodeType(str, Enum):
    """Types of nodes in the mind map."""
    CONCEPT = "Concept"
    PAPER = "Paper"
    DATASET = "Dataset"
    TOOL = "Tool"
    PERSON = "Person"
    ORGANIZATION = "Organization"
    EVENT = "Event"
    METHOD = "Method"


class EdgeKind(str, Enum):
    """
    Edge lifecycle class.

    PERMANENT edges are committed by the user (connect, accept, reconnection).
    RECOMMENDATION edges belong to an open staging round and are removed
    wholesale when the round is accepted, declined or superseded.
    """
    PERMANENT = "permanent"
    RECOMMENDATION = "recommendation"


class AttachmentType(str, Enum):
    """Kinds of attachment a node can carry."""
    LINK = "link"
    IMAGE = "image"
    FILE = "file"


class FileType(str, Enum):
    """Coarse file categories used for attachment icons and filtering."""
    DOCUMENT = "document"
    CODE = "code"
    DATA = "data"
    IMAGE = "image"
    OTHER = "other"


# =============================================================================
# EDGE STYLES
# =============================================================================

PERMANENT_EDGE_STYLE: Dict[str, Any] = {
    "type": "smoothstep",
}

RECOMMENDATION_EDGE_STYLE: Dict[str, Any] = {
    "type": "smoothstep",
    "animated": True,
    "stroke": "#a855f7",
    "strokeDasharray": "5,5",
}


def edge_style_for(kind: EdgeKind) -> Dict[str, Any]:
    """Return a fresh copy of the style hints for an edge kind."""
    if kind == EdgeKind.RECOMMENDATION:
        return dict(RECOMMENDATION_EDGE_STYLE)
    return dict(PERMANENT_EDGE_STYLE)


# =============================================================================
# PARSING HELPERS
# =============================================================================

_NODE_TYPE_LOOKUP: Dict[str, NodeType] = {nt.value.lower(): nt for nt in NodeType}


def parse_node_type(value: Any) -> Optional[NodeType]:
    """
    Convert a raw value to a NodeType.

    Matching is case-insensitive on the display value ("paper", "Paper").
    Returns None when the value is not part of the vocabulary.
    """
    if isinstance(value, NodeType):
        return value
    if not isinstance(value, str):
        return None
    return _NODE_TYPE_LOOKUP.get(value.strip().lower())

