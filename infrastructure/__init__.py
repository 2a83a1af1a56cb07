"""
LABBUDDY INFRASTRUCTURE - System-Level Modules

This package contains infrastructure components:
- config: Settings from config/labbuddy.toml and LABBUDDY_* variables
- event_bus: Publish/subscribe for graph change notifications
- logger: Mutation audit log (ring buffer + daily JSONL files)
- persistence: Backends mirroring the graph, and the retrying SyncQueue
- map_store: Saved map snapshots
- attachments: Attachment metadata and file uploads
- data_loader: Polars-based CSV/Parquet import and export

Modules are imported directly (e.g. `from infrastructure.persistence import
SyncQueue`); core imports some of them lazily, so nothing is loaded here.
"""
