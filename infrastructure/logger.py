"""
LABBUDDY MUTATION LOGGER - An Audit Trail of Every Graph Write

Records each applied mutation as a MutationEvent so a session can be
replayed or inspected after the fact.

Architecture:
- MutationLogger: Core logging interface
- EventBuffer: In-memory ring buffer for recent events (always on)
- FileLogger: Newline-delimited JSON, one file per day (optional)

Usage:
    logger = MutationLogger()
    logger.log_node_created("3f2a...", "Concept")
    logger.log_edge_created("e1", "3f2a...", "9b1c...", "permanent")

    for event in logger.get_events_for_node("3f2a..."):
        print(f"{event.timestamp}: {event.mutation_type}")

This is separate from the standard `logging` output: `logging` carries
operational messages, the mutation log carries the data history.
"""
import msgspec
from typing import Optional, List, Callable
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from collections import deque
import threading
import logging
import io

log = logging.getLogger(__name__)


# =============================================================================
# EVENT TYPES
# =============================================================================

class MutationType(str, Enum):
    """Types of graph mutations for event tracking."""
    NODE_CREATED = "NODE_CREATED"
    NODE_UPDATED = "NODE_UPDATED"
    NODE_DELETED = "NODE_DELETED"
    EDGE_CREATED = "EDGE_CREATED"
    EDGE_DELETED = "EDGE_DELETED"
    GRAPH_LOADED = "GRAPH_LOADED"


class MutationEvent(msgspec.Struct, kw_only=True):
    """One logged mutation."""
    timestamp: str
    sequence: int
    mutation_type: str                  # MutationType value
    node_id: Optional[str] = None
    node_type: Optional[str] = None
    provisional: bool = False

    # Edges
    edge_id: Optional[str] = None
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    edge_kind: Optional[str] = None

    # Bulk loads
    node_count: int = 0
    edge_count: int = 0


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class LoggerConfig:
    """Configuration for the mutation logger."""
    enable_file_log: bool = False       # Enable file-based logging
    log_path: Optional[Path] = None     # Directory for log files
    buffer_size: int = 10000            # In-memory buffer size

    def __post_init__(self):
        if self.log_path is None:
            self.log_path = Path("./data/logs")


# =============================================================================
# EVENT BUFFER
# =============================================================================

class EventBuffer:
    """
    Thread-safe ring buffer for recent mutation events.

    O(1) append, O(n) queries.
    """

    def __init__(self, max_size: int = 10000):
        self._buffer: deque = deque(maxlen=max_size)
        self._lock = threading.RLock()
        self._sequence = 0

    def append(self, event: MutationEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def get_since(self, timestamp: str) -> List[MutationEvent]:
        with self._lock:
            return [e for e in self._buffer if e.timestamp >= timestamp]

    def get_last(self, n: int) -> List[MutationEvent]:
        with self._lock:
            items = list(self._buffer)
            return items[-n:] if n > 0 else []

    def get_by_node(self, node_id: str) -> List[MutationEvent]:
        with self._lock:
            return [
                e for e in self._buffer
                if e.node_id == node_id or node_id in (e.source_id, e.target_id)
            ]

    def get_by_type(self, mutation_type: str) -> List[MutationEvent]:
        with self._lock:
            return [e for e in self._buffer if e.mutation_type == mutation_type]

    def next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


# =============================================================================
# FILE LOGGER
# =============================================================================

class FileLogger:
    """
    File-based event logger.

    Writes events as newline-delimited JSON (mutations_YYYY-MM-DD.jsonl) and
    rotates daily.
    """

    def __init__(self, log_path: Path):
        self._log_path = Path(log_path)
        self._current_file: Optional[io.TextIOWrapper] = None
        self._current_date: Optional[str] = None
        self._lock = threading.Lock()
        self._encoder = msgspec.json.Encoder()

        self._log_path.mkdir(parents=True, exist_ok=True)

    def write(self, event: MutationEvent) -> None:
        with self._lock:
            self._ensure_file()
            line = self._encoder.encode(event).decode("utf-8") + "\n"
            try:
                self._current_file.write(line)
                self._current_file.flush()
            except OSError as e:
                log.error(f"Mutation log write failed: {e}")

    def _ensure_file(self) -> None:
        """Ensure we have a valid file handle for today."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        if self._current_date != today:
            if self._current_file:
                self._current_file.close()

            filepath = self._log_path / f"mutations_{today}.jsonl"
            self._current_file = open(filepath, "a", encoding="utf-8")
            self._current_date = today

    def close(self) -> None:
        with self._lock:
            if self._current_file:
                self._current_file.close()
                self._current_file = None

    def read_log(self, date: str) -> List[MutationEvent]:
        """Read events from a specific date's log. Corrupt lines are skipped."""
        filepath = self._log_path / f"mutations_{date}.jsonl"
        if not filepath.exists():
            return []

        events = []
        decoder = msgspec.json.Decoder(type=MutationEvent)
        with open(filepath, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(decoder.decode(line.encode()))
                except msgspec.DecodeError as e:
                    log.warning(f"Skipping corrupt line {lineno} in {filepath.name}: {e}")
        return events


# =============================================================================
# MUTATION LOGGER (Main Interface)
# =============================================================================

class MutationLogger:
    """
    Main logging interface for graph mutations.

    Logs to the in-memory buffer (always) and to daily JSONL files
    (configurable). Thread-safe for concurrent logging.
    """

    def __init__(self, config: Optional[LoggerConfig] = None):
        self.config = config or LoggerConfig()

        self._buffer = EventBuffer(self.config.buffer_size)
        self._file_logger: Optional[FileLogger] = None
        if self.config.enable_file_log and self.config.log_path:
            self._file_logger = FileLogger(self.config.log_path)

        self._subscribers: List[Callable[[MutationEvent], None]] = []

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _emit(self, **fields) -> MutationEvent:
        event = MutationEvent(
            timestamp=self._now(),
            sequence=self._buffer.next_sequence(),
            **fields
        )
        self._buffer.append(event)

        if self._file_logger:
            self._file_logger.write(event)

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                log.error(f"Mutation log subscriber error: {e}", exc_info=True)
        return event

    # =========================================================================
    # LOGGING METHODS
    # =========================================================================

    def log_node_created(self, node_id: str, node_type: str, provisional: bool = False) -> MutationEvent:
        return self._emit(
            mutation_type=MutationType.NODE_CREATED.value,
            node_id=node_id,
            node_type=node_type,
            provisional=provisional,
        )

    def log_node_updated(self, node_id: str, node_type: str, provisional: bool = False) -> MutationEvent:
        return self._emit(
            mutation_type=MutationType.NODE_UPDATED.value,
            node_id=node_id,
            node_type=node_type,
            provisional=provisional,
        )

    def log_node_deleted(self, node_id: str, node_type: str, provisional: bool = False) -> MutationEvent:
        return self._emit(
            mutation_type=MutationType.NODE_DELETED.value,
            node_id=node_id,
            node_type=node_type,
            provisional=provisional,
        )

    def log_edge_created(self, edge_id: str, source_id: str, target_id: str, edge_kind: str) -> MutationEvent:
        return self._emit(
            mutation_type=MutationType.EDGE_CREATED.value,
            edge_id=edge_id,
            source_id=source_id,
            target_id=target_id,
            edge_kind=edge_kind,
        )

    def log_edge_deleted(self, edge_id: str, source_id: str, target_id: str, edge_kind: str) -> MutationEvent:
        return self._emit(
            mutation_type=MutationType.EDGE_DELETED.value,
            edge_id=edge_id,
            source_id=source_id,
            target_id=target_id,
            edge_kind=edge_kind,
        )

    def log_graph_loaded(self, node_count: int, edge_count: int) -> MutationEvent:
        return self._emit(
            mutation_type=MutationType.GRAPH_LOADED.value,
            node_count=node_count,
            edge_count=edge_count,
        )

    def log_result(self, result) -> List[MutationEvent]:
        """Log every entity a MutationResult touched, removals first."""
        events = []
        for node in result.nodes_removed:
            events.append(self.log_node_deleted(node.id, node.type.value, node.is_recommendation))
        for edge in result.edges_removed:
            events.append(self.log_edge_deleted(edge.id, edge.source, edge.target, edge.kind.value))
        for node in result.nodes_added:
            events.append(self.log_node_created(node.id, node.type.value, node.is_recommendation))
        for node in result.nodes_updated:
            events.append(self.log_node_updated(node.id, node.type.value, node.is_recommendation))
        for edge in result.edges_added:
            events.append(self.log_edge_created(edge.id, edge.source, edge.target, edge.kind.value))
        return events

    # =========================================================================
    # QUERY METHODS
    # =========================================================================

    def get_recent_events(self, n: int = 100) -> List[MutationEvent]:
        return self._buffer.get_last(n)

    def get_events_for_node(self, node_id: str) -> List[MutationEvent]:
        """Events about the node itself and about edges touching it."""
        return self._buffer.get_by_node(node_id)

    def get_events_by_type(self, mutation_type: str) -> List[MutationEvent]:
        return self._buffer.get_by_type(mutation_type)

    # =========================================================================
    # SUBSCRIPTION
    # =========================================================================

    def subscribe(self, callback: Callable[[MutationEvent], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[MutationEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def close(self) -> None:
        if self._file_logger:
            self._file_logger.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# =============================================================================
# GLOBAL INSTANCE
# =============================================================================

_global_logger: Optional[MutationLogger] = None


def get_logger() -> MutationLogger:
    """Get or create the global logger (file logging per settings.log_path)."""
    global _global_logger
    if _global_logger is None:
        from infrastructure.config import get_settings
        log_path = get_settings().log_path
        _global_logger = MutationLogger(LoggerConfig(
            enable_file_log=bool(log_path),
            log_path=Path(log_path) if log_path else None,
        ))
    return _global_logger


def set_logger(logger: Optional[MutationLogger]) -> None:
    """Replace the global logger, closing the previous one."""
    global _global_logger
    if _global_logger is not None and _global_logger is not logger:
        _global_logger.close()
    _global_logger = logger

