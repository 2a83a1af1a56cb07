"""
LABBUDDY SEARCH - Derived, Read-Only View of the Graph

Case-insensitive substring match on a node's title, type and description.
Each field is matched on its own. Results keep the store's insertion order;
a blank query returns every node.
"""
from typing import Iterable, List, Tuple

from core.schemas import NodeData


def _fields(node: NodeData) -> Tuple[str, str, str]:
    node_type = node.type.value if hasattr(node.type, "value") else str(node.type)
    return node.title, node_type, node.description or ""


def search_nodes(nodes: Iterable[NodeData], query: str) -> List[NodeData]:
    """Filter nodes by query. Pure: neither the nodes nor their order change."""
    nodes = list(nodes)
    needle = (query or "").strip().lower()
    if not needle:
        return nodes
    return [
        node for node in nodes
        if any(needle in field.lower() for field in _fields(node))
    ]
