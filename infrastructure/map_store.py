"""
LABBUDDY MAP STORE - Named Snapshots of a User's Mind Map

A saved map is one document: title plus the full MapData. Unlike the live
node/edge mirror in persistence.py, maps are written whole and read whole.

Stores:
- MemoryMapStore: dict, for tests and offline use
- SQLiteMapStore: saved_maps table, data column holds msgspec JSON
"""
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import msgspec

from core.schemas import (
    MapData,
    SavedMap,
    SavedMapInput,
    SavedMapUpdate,
    ValidationError,
    deserialize_map_data,
    encode,
    now_utc,
    validate_map_data,
)
from infrastructure.persistence import PersistenceError

logger = logging.getLogger(__name__)


def _check_title(title: Optional[str]) -> None:
    if title is not None and not title.strip():
        raise ValidationError("Map title is required", field="title")


def _without_staging(data: MapData) -> MapData:
    """
    Validate an incoming map and strip provisional suggestions from it.

    Raises:
        ValidationError: Blank node title or duplicate node id
    """
    validate_map_data(data)
    return MapData(
        nodes=[n for n in data.nodes if not n.is_recommendation],
        edges=[e for e in data.edges if not e.is_recommendation],
    )


class MapStore(Protocol):

    def create(self, data: SavedMapInput) -> SavedMap: ...

    def get(self, user_id: str, map_id: str) -> Optional[SavedMap]: ...

    def list_for_user(self, user_id: str) -> List[SavedMap]: ...

    def update(self, map_id: str, changes: SavedMapUpdate) -> Optional[SavedMap]: ...

    def delete(self, user_id: str, map_id: str) -> bool: ...


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class MemoryMapStore:

    def __init__(self):
        self._maps: Dict[str, SavedMap] = {}

    def create(self, data: SavedMapInput) -> SavedMap:
        _check_title(data.title)
        saved = SavedMap(
            id=str(uuid.uuid4()),
            user_id=data.user_id,
            title=data.title,
            data=_without_staging(data.data),
        )
        self._maps[saved.id] = saved
        return saved

    def get(self, user_id: str, map_id: str) -> Optional[SavedMap]:
        saved = self._maps.get(map_id)
        if saved is None or saved.user_id != user_id:
            return None
        return saved

    def list_for_user(self, user_id: str) -> List[SavedMap]:
        maps = [m for m in self._maps.values() if m.user_id == user_id]
        # Stable sort keeps insertion order among equal timestamps; reverse it first
        return sorted(reversed(maps), key=lambda m: m.updated_at, reverse=True)

    def update(self, map_id: str, changes: SavedMapUpdate) -> Optional[SavedMap]:
        existing = self._maps.get(map_id)
        if existing is None:
            return None
        _check_title(changes.title)
        updated = msgspec.structs.replace(
            existing,
            title=changes.title if changes.title is not None else existing.title,
            data=_without_staging(changes.data) if changes.data is not None else existing.data,
            updated_at=now_utc(),
        )
        self._maps[map_id] = updated
        return updated

    def delete(self, user_id: str, map_id: str) -> bool:
        if self.get(user_id, map_id) is None:
            return False
        del self._maps[map_id]
        return True


# =============================================================================
# SQLITE STORE
# =============================================================================

class SQLiteMapStore:
    """saved_maps table in the same SQLite file as the node/edge mirror."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS saved_maps (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        data TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_saved_maps_user ON saved_maps(user_id);
                    """
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite schema setup failed: {e}") from e

    def _row_to_map(self, row: Dict[str, Any]) -> Optional[SavedMap]:
        try:
            data = deserialize_map_data(row["data"].encode("utf-8"))
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            logger.warning(f"Skipping saved map {row['id']}: corrupt data ({e})")
            return None
        return SavedMap(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            data=data,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch(self, sql: str, params: tuple) -> List[SavedMap]:
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.row_factory = sqlite3.Row
                rows = [dict(r) for r in conn.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite read failed: {e}") from e
        return [m for m in (self._row_to_map(r) for r in rows) if m is not None]

    def _write(self, sql: str, params: tuple) -> int:
        try:
            with sqlite3.connect(self.db_path) as conn:
                return conn.execute(sql, params).rowcount
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite write failed: {e}") from e

    def create(self, data: SavedMapInput) -> SavedMap:
        _check_title(data.title)
        saved = SavedMap(
            id=str(uuid.uuid4()),
            user_id=data.user_id,
            title=data.title,
            data=_without_staging(data.data),
        )
        self._write(
            """
            INSERT INTO saved_maps (id, user_id, title, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                saved.id, saved.user_id, saved.title, encode(saved.data).decode("utf-8"),
                saved.created_at, saved.updated_at,
            ),
        )
        return saved

    def get(self, user_id: str, map_id: str) -> Optional[SavedMap]:
        maps = self._fetch(
            "SELECT * FROM saved_maps WHERE id = ? AND user_id = ?",
            (map_id, user_id),
        )
        return maps[0] if maps else None

    def list_for_user(self, user_id: str) -> List[SavedMap]:
        return self._fetch(
            "SELECT * FROM saved_maps WHERE user_id = ? ORDER BY updated_at DESC, rowid DESC",
            (user_id,),
        )

    def update(self, map_id: str, changes: SavedMapUpdate) -> Optional[SavedMap]:
        _check_title(changes.title)
        existing = self._fetch("SELECT * FROM saved_maps WHERE id = ?", (map_id,))
        if not existing:
            return None
        current = existing[0]
        updated = msgspec.structs.replace(
            current,
            title=changes.title if changes.title is not None else current.title,
            data=_without_staging(changes.data) if changes.data is not None else current.data,
            updated_at=now_utc(),
        )
        self._write(
            "UPDATE saved_maps SET title = ?, data = ?, updated_at = ? WHERE id = ?",
            (updated.title, encode(updated.data).decode("utf-8"), updated.updated_at, map_id),
        )
        return updated

    def delete(self, user_id: str, map_id: str) -> bool:
        count = self._write(
            "DELETE FROM saved_maps WHERE id = ? AND user_id = ?",
            (map_id, user_id),
        )
        return count > 0


def create_map_store(settings) -> MapStore:
    """SQLite when the node/edge mirror is SQLite, memory otherwise."""
    if settings.persistence == "sqlite":
        return SQLiteMapStore(settings.db_path)
    return MemoryMapStore()
