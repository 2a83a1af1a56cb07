"""
LABBUDDY DATA LOADER - Bulk Import and Export of Mind Maps

Moves whole maps in and out of tabular files with Polars:

    nodes.csv / nodes.parquet   id, title, type, description, position_x, position_y, ...
    edges.csv / edges.parquet   source_id, target_id, [id], [created_at]

Import is all-or-nothing. Every row is checked (type in the vocabulary,
non-blank title, unique id, edge endpoints present, no self-loops) before a
MapData is returned; the first batch of problems is reported together in
one DataIntegrityError.

Export writes permanent entities only. Staged suggestions are not part of
the map.
"""
import polars as pl
from typing import List, Optional, Dict, Tuple
from pathlib import Path

from core.ontology import EdgeKind, NodeType, edge_style_for, parse_node_type
from core.schemas import EdgeData, MapData, NodeData, Position, generate_id, now_utc


# =============================================================================
# SCHEMA DEFINITIONS
# =============================================================================

NODE_COLUMNS = {
    "id": pl.Utf8,
    "title": pl.Utf8,
    "type": pl.Utf8,
}

NODE_OPTIONAL = {
    "description": pl.Utf8,
    "position_x": pl.Float64,
    "position_y": pl.Float64,
    "created_at": pl.Utf8,
    "updated_at": pl.Utf8,
}

EDGE_COLUMNS = {
    "source_id": pl.Utf8,
    "target_id": pl.Utf8,
}

EDGE_OPTIONAL = {
    "id": pl.Utf8,
    "created_at": pl.Utf8,
}

FORMATS = ("csv", "parquet")


# =============================================================================
# ERRORS
# =============================================================================

class DataLoadError(Exception):
    """Base exception for data loading errors."""
    pass


class SchemaValidationError(DataLoadError):
    """Raised when a file lacks required columns."""
    def __init__(self, missing_columns: List[str]):
        self.missing_columns = missing_columns
        super().__init__(f"Schema validation failed. Missing columns: {missing_columns}")


class DataIntegrityError(DataLoadError):
    """Raised when rows are individually invalid (bad type, dangling edge...)."""
    def __init__(self, problems: List[str]):
        self.problems = problems
        shown = "; ".join(problems[:10])
        more = f" (+{len(problems) - 10} more)" if len(problems) > 10 else ""
        super().__init__(f"{len(problems)} invalid rows: {shown}{more}")


def detect_format(path: str | Path) -> str:
    suffix = Path(path).suffix.lower().lstrip(".")
    if suffix not in FORMATS:
        raise ValueError(f"Unknown format: {suffix!r}. Use: {list(FORMATS)}")
    return suffix


# =============================================================================
# POLARS LOADER (Lazy File Loading)
# =============================================================================

class PolarsLoader:
    """
    Lazy loader for node and edge files.

    Columns are cast to the expected dtypes on the lazy frame, so a CSV whose
    ids happen to look numeric still yields string ids.
    """

    def scan(self, path: str | Path) -> pl.LazyFrame:
        path = Path(path)
        if detect_format(path) == "csv":
            return pl.scan_csv(path, infer_schema_length=0)
        return pl.scan_parquet(path)

    def load_nodes(self, path: str | Path) -> pl.DataFrame:
        return self._load(path, NODE_COLUMNS, NODE_OPTIONAL)

    def load_edges(self, path: str | Path) -> pl.DataFrame:
        return self._load(path, EDGE_COLUMNS, EDGE_OPTIONAL)

    def _load(
        self,
        path: str | Path,
        required: Dict[str, pl.DataType],
        optional: Dict[str, pl.DataType],
    ) -> pl.DataFrame:
        lf = self.scan(path)
        schema = lf.collect_schema()

        missing = [c for c in required if c not in schema]
        if missing:
            raise SchemaValidationError(missing_columns=missing)

        # Absent optional columns become all-null so the row loop sees one shape
        lf = lf.with_columns([
            pl.lit(None).alias(c) for c in optional if c not in schema
        ])
        columns = {**required, **optional}
        return lf.select([
            pl.col(c).cast(dtype, strict=False) for c, dtype in columns.items()
        ]).collect()


# =============================================================================
# FRAME <-> MAP CONVERSION
# =============================================================================

def frames_to_map(nodes_df: pl.DataFrame, edges_df: Optional[pl.DataFrame] = None) -> MapData:
    """
    Build a validated MapData from node and edge frames.

    Raises:
        DataIntegrityError: One or more rows are invalid
    """
    problems: List[str] = []
    nodes: List[NodeData] = []
    seen: set = set()

    for lineno, row in enumerate(nodes_df.iter_rows(named=True), 1):
        node_id = row["id"]
        node_type = parse_node_type(row["type"])
        title = row["title"]

        if not node_id:
            problems.append(f"node row {lineno}: missing id")
            continue
        if node_id in seen:
            problems.append(f"node row {lineno}: duplicate id {node_id}")
            continue
        if node_type is None:
            problems.append(f"node row {lineno}: unknown type {row['type']!r}")
            continue
        if not title or not title.strip():
            problems.append(f"node row {lineno}: blank title")
            continue

        seen.add(node_id)
        created_at = row["created_at"] or now_utc()
        nodes.append(NodeData(
            id=node_id,
            title=title,
            type=node_type,
            description=row["description"] or "",
            position=Position(x=row["position_x"] or 0.0, y=row["position_y"] or 0.0),
            created_at=created_at,
            updated_at=row["updated_at"] or created_at,
        ))

    edges: List[EdgeData] = []
    if edges_df is not None:
        for lineno, row in enumerate(edges_df.iter_rows(named=True), 1):
            source, target = row["source_id"], row["target_id"]
            if source not in seen or target not in seen:
                problems.append(f"edge row {lineno}: dangling endpoint {source} -> {target}")
                continue
            if source == target:
                problems.append(f"edge row {lineno}: self-loop on {source}")
                continue
            edges.append(EdgeData(
                id=row["id"] or generate_id(),
                source=source,
                target=target,
                kind=EdgeKind.PERMANENT,
                style=edge_style_for(EdgeKind.PERMANENT),
                created_at=row["created_at"] or now_utc(),
            ))

    if problems:
        raise DataIntegrityError(problems)
    return MapData(nodes=nodes, edges=edges)


def map_to_frames(data: MapData) -> Tuple[pl.DataFrame, pl.DataFrame]:
    """Permanent nodes and edges of a map as (nodes_df, edges_df)."""
    nodes = [n for n in data.nodes if not n.is_recommendation]
    edges = [e for e in data.edges if not e.is_recommendation]

    nodes_df = pl.DataFrame(
        {
            "id": [n.id for n in nodes],
            "title": [n.title for n in nodes],
            "type": [n.type.value for n in nodes],
            "description": [n.description for n in nodes],
            "position_x": [float(n.position.x) for n in nodes],
            "position_y": [float(n.position.y) for n in nodes],
            "created_at": [n.created_at for n in nodes],
            "updated_at": [n.updated_at for n in nodes],
        },
        schema={**NODE_COLUMNS, **NODE_OPTIONAL},
    )
    edges_df = pl.DataFrame(
        {
            "id": [e.id for e in edges],
            "source_id": [e.source for e in edges],
            "target_id": [e.target for e in edges],
            "created_at": [e.created_at for e in edges],
        },
        schema={"id": pl.Utf8, "source_id": pl.Utf8, "target_id": pl.Utf8, "created_at": pl.Utf8},
    )
    return nodes_df, edges_df


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def import_map(nodes_path: str | Path, edges_path: Optional[str | Path] = None) -> MapData:
    """
    Read and validate a map from node (and optionally edge) files.

    Raises:
        SchemaValidationError: A file lacks required columns
        DataIntegrityError: Rows failed validation
    """
    loader = PolarsLoader()
    nodes_df = loader.load_nodes(nodes_path)
    edges_df = loader.load_edges(edges_path) if edges_path else None
    return frames_to_map(nodes_df, edges_df)


def export_map(data: MapData, nodes_path: str | Path, edges_path: str | Path) -> Tuple[int, int]:
    """
    Write a map to node and edge files; the format follows each suffix.

    Returns:
        Tuple of (nodes_written, edges_written)
    """
    nodes_df, edges_df = map_to_frames(data)
    for df, path in ((nodes_df, nodes_path), (edges_df, edges_path)):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if detect_format(path) == "csv":
            df.write_csv(path)
        else:
            df.write_parquet(path)
    return nodes_df.height, edges_df.height


def sample_map() -> MapData:
    """A three-node starter map: one concept with a paper and a dataset."""
    ml = NodeData.create(
        "Machine Learning", NodeType.CONCEPT,
        description="Core concept in artificial intelligence",
        position=Position(x=250, y=100),
    )
    paper = NodeData.create(
        "GPT-4 Paper", NodeType.PAPER,
        description="Large language model research paper",
        position=Position(x=100, y=250),
    )
    dataset = NodeData.create(
        "ImageNet", NodeType.DATASET,
        description="Large-scale image recognition dataset",
        position=Position(x=400, y=250),
    )
    return MapData(
        nodes=[ml, paper, dataset],
        edges=[EdgeData.create(ml.id, paper.id), EdgeData.create(ml.id, dataset.id)],
    )
