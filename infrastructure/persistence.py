"""
LABBUDDY PERSISTENCE - The Remote Store Boundary

The graph store is the source of truth while the app runs; a persistence
backend only mirrors it. Mutations are applied locally first and the
resulting SyncOps are replayed here in the background:

    MindMapSession --SyncOp--> SyncQueue --(thread, tenacity retry)--> Backend

Backends:
- InMemoryBackend: dicts, for tests and offline use
- SQLiteBackend:   sqlite3 file with the mind_map_nodes / mind_map_edges tables
- RestBackend:     httpx against a PostgREST-style hosted database

Failure policy: a backend raises PersistenceError for any collaborator
fault. The queue retries a bounded number of times, then logs the op and
keeps it in failed_ops. Local state is never rolled back.

Rows are validated on read. A row with a node type outside the vocabulary
is logged and skipped rather than loaded.
"""
import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

import httpx
import msgspec
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.llm import CollaboratorError
from core.mutations import SyncKind, SyncOp
from core.ontology import EdgeKind, edge_style_for, parse_node_type
from core.schemas import EdgeData, NodeData, Position, generate_id, now_utc
from infrastructure.event_bus import EventType, publish

logger = logging.getLogger("labbuddy.persistence")


# =============================================================================
# ERRORS & ROW MAPPING
# =============================================================================

class PersistenceError(CollaboratorError):
    """The persistence collaborator failed (I/O, HTTP, SQL)."""
    pass


def node_to_row(node: NodeData, user_id: str) -> Dict[str, Any]:
    return {
        "id": node.id,
        "user_id": user_id,
        "title": node.title,
        "type": node.type.value,
        "description": node.description,
        "position_x": node.position.x,
        "position_y": node.position.y,
        "created_at": node.created_at,
        "updated_at": node.updated_at,
    }


def row_to_node(row: Dict[str, Any]) -> Optional[NodeData]:
    """Convert a stored row; None (with a warning) if it fails validation."""
    node_type = parse_node_type(row.get("type"))
    if node_type is None:
        logger.warning(f"Skipping node {row.get('id')}: unknown type {row.get('type')!r}")
        return None
    title = row.get("title")
    if not isinstance(title, str) or not title.strip():
        logger.warning(f"Skipping node {row.get('id')}: blank title")
        return None
    try:
        position = Position(
            x=float(row.get("position_x") or 0.0),
            y=float(row.get("position_y") or 0.0),
        )
    except (TypeError, ValueError):
        logger.warning(f"Skipping node {row.get('id')}: bad position")
        return None

    created_at = row.get("created_at") or now_utc()
    return NodeData(
        id=str(row["id"]),
        title=title,
        type=node_type,
        description=row.get("description") or "",
        position=position,
        created_at=str(created_at),
        updated_at=str(row.get("updated_at") or created_at),
    )


def row_to_edge(row: Dict[str, Any]) -> Optional[EdgeData]:
    source, target = row.get("source_id"), row.get("target_id")
    if not source or not target:
        logger.warning(f"Skipping edge {row.get('id')}: missing endpoint")
        return None
    return EdgeData(
        id=str(row["id"]),
        source=str(source),
        target=str(target),
        kind=EdgeKind.PERMANENT,
        style=edge_style_for(EdgeKind.PERMANENT),
        created_at=str(row.get("created_at") or now_utc()),
    )


def _valid(items: Iterable[Optional[Any]]) -> List[Any]:
    return [item for item in items if item is not None]


# =============================================================================
# BACKEND PROTOCOL
# =============================================================================

class PersistenceBackend(Protocol):
    """
    The remote store contract.

    Writes return True on success and False when the target row does not
    exist. Every collaborator fault raises PersistenceError.
    """

    def load_nodes(self, user_id: str) -> List[NodeData]: ...

    def save_node(self, node: NodeData, user_id: str) -> bool: ...

    def update_node(self, node: NodeData, user_id: str) -> bool: ...

    def delete_node(self, node_id: str, user_id: str) -> bool: ...

    def load_edges(self, user_id: str) -> List[EdgeData]: ...

    def save_edge(
        self, source_id: str, target_id: str, user_id: str, edge_id: Optional[str] = None
    ) -> bool: ...

    def delete_edge(self, edge_id: str, user_id: str) -> bool: ...


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class InMemoryBackend:
    """Rows kept in dicts keyed by user id. Insertion ordered."""

    def __init__(self):
        self._nodes: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._edges: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def load_nodes(self, user_id: str) -> List[NodeData]:
        return _valid(row_to_node(r) for r in self._nodes.get(user_id, {}).values())

    def save_node(self, node: NodeData, user_id: str) -> bool:
        self._nodes.setdefault(user_id, {})[node.id] = node_to_row(node, user_id)
        return True

    def update_node(self, node: NodeData, user_id: str) -> bool:
        rows = self._nodes.get(user_id, {})
        if node.id not in rows:
            return False
        row = node_to_row(node, user_id)
        row["created_at"] = rows[node.id]["created_at"]
        rows[node.id] = row
        return True

    def delete_node(self, node_id: str, user_id: str) -> bool:
        rows = self._nodes.get(user_id, {})
        if rows.pop(node_id, None) is None:
            return False
        edges = self._edges.get(user_id, {})
        for edge_id in [
            eid for eid, e in edges.items() if node_id in (e["source_id"], e["target_id"])
        ]:
            del edges[edge_id]
        return True

    def load_edges(self, user_id: str) -> List[EdgeData]:
        return _valid(row_to_edge(r) for r in self._edges.get(user_id, {}).values())

    def save_edge(
        self, source_id: str, target_id: str, user_id: str, edge_id: Optional[str] = None
    ) -> bool:
        edge_id = edge_id or generate_id()
        self._edges.setdefault(user_id, {})[edge_id] = {
            "id": edge_id,
            "user_id": user_id,
            "source_id": source_id,
            "target_id": target_id,
            "created_at": now_utc(),
        }
        return True

    def delete_edge(self, edge_id: str, user_id: str) -> bool:
        return self._edges.get(user_id, {}).pop(edge_id, None) is not None


# =============================================================================
# SQLITE BACKEND
# =============================================================================

class SQLiteBackend:
    """SQLite-backed mirror of the mind map, one row per node and per edge."""

    DB_PATH = Path("data/labbuddy.db")

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else self.DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        self._run_script(
            """
            CREATE TABLE IF NOT EXISTS mind_map_nodes (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                type TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                position_x REAL NOT NULL DEFAULT 0,
                position_y REAL NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS mind_map_edges (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_nodes_user ON mind_map_nodes(user_id);
            CREATE INDEX IF NOT EXISTS idx_edges_user ON mind_map_edges(user_id);
            """
        )

    def _run_script(self, script: str) -> None:
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.executescript(script)
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite schema setup failed: {e}") from e

    def _execute(self, sql: str, params: tuple) -> int:
        """Run one write statement and return the affected row count."""
        try:
            with sqlite3.connect(self.db_path) as conn:
                return conn.execute(sql, params).rowcount
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite write failed: {e}") from e

    def _query(self, sql: str, params: tuple) -> List[Dict[str, Any]]:
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.row_factory = sqlite3.Row
                return [dict(r) for r in conn.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite read failed: {e}") from e

    # === Nodes ===

    def load_nodes(self, user_id: str) -> List[NodeData]:
        rows = self._query(
            "SELECT * FROM mind_map_nodes WHERE user_id = ? ORDER BY created_at, rowid",
            (user_id,),
        )
        return _valid(row_to_node(r) for r in rows)

    def save_node(self, node: NodeData, user_id: str) -> bool:
        row = node_to_row(node, user_id)
        self._execute(
            """
            INSERT OR REPLACE INTO mind_map_nodes (
                id, user_id, title, type, description,
                position_x, position_y, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row["id"], row["user_id"], row["title"], row["type"], row["description"],
                row["position_x"], row["position_y"], row["created_at"], row["updated_at"],
            ),
        )
        return True

    def update_node(self, node: NodeData, user_id: str) -> bool:
        count = self._execute(
            """
            UPDATE mind_map_nodes
            SET title = ?, type = ?, description = ?,
                position_x = ?, position_y = ?, updated_at = ?
            WHERE id = ? AND user_id = ?
            """,
            (
                node.title, node.type.value, node.description,
                node.position.x, node.position.y, now_utc(),
                node.id, user_id,
            ),
        )
        return count > 0

    def delete_node(self, node_id: str, user_id: str) -> bool:
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    "DELETE FROM mind_map_edges WHERE user_id = ? AND (source_id = ? OR target_id = ?)",
                    (user_id, node_id, node_id),
                )
                count = conn.execute(
                    "DELETE FROM mind_map_nodes WHERE id = ? AND user_id = ?",
                    (node_id, user_id),
                ).rowcount
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite delete failed: {e}") from e
        return count > 0

    # === Edges ===

    def load_edges(self, user_id: str) -> List[EdgeData]:
        rows = self._query(
            "SELECT * FROM mind_map_edges WHERE user_id = ? ORDER BY created_at, rowid",
            (user_id,),
        )
        return _valid(row_to_edge(r) for r in rows)

    def save_edge(
        self, source_id: str, target_id: str, user_id: str, edge_id: Optional[str] = None
    ) -> bool:
        edge_id = edge_id or generate_id()
        self._execute(
            """
            INSERT OR REPLACE INTO mind_map_edges (id, user_id, source_id, target_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (edge_id, user_id, source_id, target_id, now_utc()),
        )
        return True

    def delete_edge(self, edge_id: str, user_id: str) -> bool:
        count = self._execute(
            "DELETE FROM mind_map_edges WHERE id = ? AND user_id = ?",
            (edge_id, user_id),
        )
        return count > 0


# =============================================================================
# REST BACKEND
# =============================================================================

class RestBackend:
    """
    PostgREST-style hosted database (the tables of SQLiteBackend, over HTTP).

    base_url is the REST root, e.g. "https://<project>.supabase.co/rest/v1".
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        if client is None:
            client = httpx.Client(base_url=self.base_url, timeout=timeout)
        self._client = client
        self._headers = headers

    def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = self._client.request(
                method,
                f"{self.base_url}/{table}",
                params=params,
                json=json,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PersistenceError(
                f"{method} {table} returned {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise PersistenceError(f"{method} {table} failed: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise PersistenceError(f"{method} {table} returned invalid JSON") from e

    def close(self) -> None:
        self._client.close()

    # === Nodes ===

    def load_nodes(self, user_id: str) -> List[NodeData]:
        rows = self._request(
            "GET", "mind_map_nodes",
            params={"user_id": f"eq.{user_id}", "select": "*", "order": "created_at.asc"},
        ) or []
        return _valid(row_to_node(r) for r in rows)

    def save_node(self, node: NodeData, user_id: str) -> bool:
        self._request("POST", "mind_map_nodes", json=node_to_row(node, user_id),
                      prefer="return=minimal")
        return True

    def update_node(self, node: NodeData, user_id: str) -> bool:
        rows = self._request(
            "PATCH", "mind_map_nodes",
            params={"id": f"eq.{node.id}", "user_id": f"eq.{user_id}"},
            json={
                "title": node.title,
                "type": node.type.value,
                "description": node.description,
                "position_x": node.position.x,
                "position_y": node.position.y,
                "updated_at": now_utc(),
            },
            prefer="return=representation",
        )
        return bool(rows)

    def delete_node(self, node_id: str, user_id: str) -> bool:
        rows = self._request(
            "DELETE", "mind_map_nodes",
            params={"id": f"eq.{node_id}", "user_id": f"eq.{user_id}"},
            prefer="return=representation",
        )
        return bool(rows)

    # === Edges ===

    def load_edges(self, user_id: str) -> List[EdgeData]:
        rows = self._request(
            "GET", "mind_map_edges",
            params={"user_id": f"eq.{user_id}", "select": "*", "order": "created_at.asc"},
        ) or []
        return _valid(row_to_edge(r) for r in rows)

    def save_edge(
        self, source_id: str, target_id: str, user_id: str, edge_id: Optional[str] = None
    ) -> bool:
        row = {"user_id": user_id, "source_id": source_id, "target_id": target_id}
        if edge_id:
            row["id"] = edge_id
        self._request("POST", "mind_map_edges", json=row, prefer="return=minimal")
        return True

    def delete_edge(self, edge_id: str, user_id: str) -> bool:
        rows = self._request(
            "DELETE", "mind_map_edges",
            params={"id": f"eq.{edge_id}", "user_id": f"eq.{user_id}"},
            prefer="return=representation",
        )
        return bool(rows)


def create_backend(settings) -> PersistenceBackend:
    """
    Build the backend named by settings.persistence.

    Raises:
        ValueError: rest backend without a URL
    """
    if settings.persistence == "sqlite":
        return SQLiteBackend(settings.db_path)
    if settings.persistence == "rest":
        if not settings.rest_url:
            raise ValueError("LABBUDDY_REST_URL is required for the rest backend")
        return RestBackend(settings.rest_url, settings.rest_key)
    return InMemoryBackend()


# =============================================================================
# SYNC QUEUE
# =============================================================================

class FailedSync(msgspec.Struct, kw_only=True):
    """A SyncOp that exhausted its retries."""
    op: SyncOp
    error: str
    failed_at: str = msgspec.field(default_factory=now_utc)


class SyncQueue:
    """
    Fire-and-forget replay of SyncOps against a backend.

    Each submit() becomes one asyncio task that runs its ops in order in a
    worker thread; tasks are chained so batches reach the backend in
    submission order. Without a running event loop the ops run inline.

    Usage:
        queue = SyncQueue(SQLiteBackend("data/labbuddy.db"), user_id="u1")
        queue.submit(result.sync_ops)      # returns immediately
        await queue.drain()                # tests / shutdown
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        user_id: str,
        attempts: int = 3,
        wait=None,
    ):
        self.backend = backend
        self.user_id = user_id
        self.attempts = max(1, attempts)
        self.wait = wait if wait is not None else wait_exponential(multiplier=0.5, max=5)
        self.failed_ops: List[FailedSync] = []
        self._tasks: Set[asyncio.Task] = set()
        self._last_task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, ops: Iterable[SyncOp]) -> None:
        ops = list(ops)
        if not ops:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            for op in ops:
                self._record(op, self._apply_with_retry(op))
            return

        task = loop.create_task(self._run_batch(ops, self._last_task))
        self._last_task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until every submitted batch has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def _run_batch(self, ops: List[SyncOp], previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        for op in ops:
            error = await asyncio.to_thread(self._apply_with_retry, op)
            self._record(op, error)

    def _apply_with_retry(self, op: SyncOp) -> Optional[str]:
        """Apply one op with bounded retries. Returns the final error, if any."""
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.attempts),
                wait=self.wait,
                retry=retry_if_exception_type(PersistenceError),
                reraise=True,
            ):
                with attempt:
                    self._apply(op)
        except PersistenceError as e:
            return str(e)
        return None

    def _record(self, op: SyncOp, error: Optional[str]) -> None:
        if error is None:
            return
        logger.error(f"Sync {op.kind.value} failed after {self.attempts} attempts: {error}")
        self.failed_ops.append(FailedSync(op=op, error=error))
        publish(
            EventType.SYNC_FAILED,
            {"kind": op.kind.value, "error": error},
            source="sync",
        )

    def _apply(self, op: SyncOp) -> None:
        backend, user_id = self.backend, self.user_id

        if op.kind == SyncKind.CREATE_NODE:
            ok = backend.save_node(op.node, user_id)
        elif op.kind == SyncKind.UPDATE_NODE:
            ok = backend.update_node(op.node, user_id)
        elif op.kind == SyncKind.DELETE_NODE:
            ok = backend.delete_node(op.target_id, user_id)
        elif op.kind == SyncKind.CREATE_EDGE:
            ok = backend.save_edge(op.edge.source, op.edge.target, user_id, edge_id=op.edge.id)
        elif op.kind == SyncKind.DELETE_EDGE:
            ok = backend.delete_edge(op.target_id, user_id)
        else:
            raise ValueError(f"Unknown sync op: {op.kind}")

        if not ok:
            logger.warning(f"Sync {op.kind.value}: target row not found remotely")
