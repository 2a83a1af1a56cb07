"""
LABBUDDY MAIN - Entry Point and CLI

Commands:
    serve    - Start the API server (Granian, ASGI)
    import   - Import a map from node/edge files into the persistence backend
    export   - Export the persisted map to node/edge files
    env      - Show the resolved settings

Usage:
    # Start API (development, auto-reload)
    python main.py serve

    # Production server
    python main.py serve --prod --workers 4

    # Import a map (CSV or Parquet, chosen by suffix)
    python main.py import nodes.csv --edges edges.csv

    # Seed the backend with the three-node starter map
    python main.py import --sample

    # Export the persisted map
    python main.py export --format parquet --output ./export

    # Show settings
    python main.py env

Settings come from config/labbuddy.toml and LABBUDDY_* environment
variables. Import and export only make sense with a durable backend
(LABBUDDY_PERSISTENCE=sqlite or rest).
"""
import sys
import logging
from pathlib import Path


def _configure_logging() -> None:
    from infrastructure.config import get_settings

    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_server(host: str, port: int, workers: int = 1, reload: bool = False):
    """Run the API server with Granian."""
    from granian import Granian
    from granian.constants import Interfaces

    print(f"Starting LabBuddy API server on {host}:{port} with {workers} worker(s)")
    print("Press Ctrl+C to stop")

    granian = Granian(
        target="api.routes:app",
        address=host,
        port=port,
        interface=Interfaces.ASGI,
        workers=workers,
        reload=reload,
    )

    granian.serve()


def cmd_serve(args):
    """Handle serve command."""
    from infrastructure.config import get_settings

    settings = get_settings()
    host = args.host or settings.host
    port = args.port or settings.port
    if args.prod:
        run_server(host, port, workers=args.workers, reload=False)
    else:
        run_server(host, port, workers=1, reload=True)


def cmd_import(args):
    """Handle import command - validate files, then write every row to the backend."""
    from infrastructure.config import get_settings
    from infrastructure.data_loader import DataLoadError, import_map, sample_map
    from infrastructure.persistence import PersistenceError, create_backend

    settings = get_settings()
    if settings.persistence == "memory":
        print("Warning: persistence is 'memory'; the imported map is lost on exit")

    if args.sample:
        data = sample_map()
    elif args.nodes_file:
        print(f"Importing map from {args.nodes_file}...")
        try:
            data = import_map(args.nodes_file, args.edges_file)
        except (DataLoadError, ValueError, OSError) as e:
            print(f"Import failed: {e}")
            sys.exit(1)
    else:
        print("Import failed: give a nodes file or --sample")
        sys.exit(1)

    backend = create_backend(settings)
    try:
        for node in data.nodes:
            backend.save_node(node, settings.user_id)
        for edge in data.edges:
            backend.save_edge(edge.source, edge.target, settings.user_id, edge_id=edge.id)
    except PersistenceError as e:
        print(f"Import failed: {e}")
        sys.exit(1)

    print(f"Imported {len(data.nodes)} nodes, {len(data.edges)} edges for user {settings.user_id}")


def cmd_export(args):
    """Handle export command - export the persisted map to files."""
    from core.schemas import MapData
    from infrastructure.config import get_settings
    from infrastructure.data_loader import export_map
    from infrastructure.persistence import PersistenceError, create_backend

    settings = get_settings()
    output_dir = Path(args.output)
    nodes_path = output_dir / f"nodes.{args.format}"
    edges_path = output_dir / f"edges.{args.format}"

    print(f"Exporting map to {output_dir}...")

    backend = create_backend(settings)
    try:
        data = MapData(
            nodes=backend.load_nodes(settings.user_id),
            edges=backend.load_edges(settings.user_id),
        )
    except PersistenceError as e:
        print(f"Export failed: {e}")
        sys.exit(1)

    nodes_written, edges_written = export_map(data, nodes_path, edges_path)
    print(f"Exported {nodes_written} nodes, {edges_written} edges")
    print(f"  Nodes: {nodes_path}")
    print(f"  Edges: {edges_path}")


def cmd_env(args):
    """Handle env command - show the resolved settings (secrets masked)."""
    import msgspec
    from infrastructure.config import get_settings

    settings = msgspec.structs.asdict(get_settings())
    if settings.get("rest_key"):
        settings["rest_key"] = "***"

    print("=" * 50)
    print("LABBUDDY SETTINGS")
    print("=" * 50)
    for name, value in settings.items():
        print(f"{name + ':':<18}{value}")
    print("=" * 50)


def main(argv=None):
    """Main entry point with subcommands."""
    import argparse

    parser = argparse.ArgumentParser(
        description="LabBuddy - AI-assisted research mind maps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start API server")
    serve_parser.add_argument("--host", help="Host to bind to (default from settings)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default from settings)")
    serve_parser.add_argument("--workers", type=int, default=4, help="Number of workers (prod)")
    serve_parser.add_argument("--prod", action="store_true", help="Run in production mode")
    serve_parser.set_defaults(func=cmd_serve)

    # import command
    import_parser = subparsers.add_parser("import", help="Import map from files")
    import_parser.add_argument("nodes_file", nargs="?", help="Path to nodes file (.csv or .parquet)")
    import_parser.add_argument("--edges", dest="edges_file", help="Path to edges file (optional)")
    import_parser.add_argument("--sample", action="store_true", help="Import the starter map instead")
    import_parser.set_defaults(func=cmd_import)

    # export command
    export_parser = subparsers.add_parser("export", help="Export map to files")
    export_parser.add_argument("--output", "-o", default="./export", help="Output directory")
    export_parser.add_argument("--format", choices=["parquet", "csv"], default="parquet")
    export_parser.set_defaults(func=cmd_export)

    # env command
    env_parser = subparsers.add_parser("env", help="Show resolved settings")
    env_parser.set_defaults(func=cmd_env)

    args = parser.parse_args(argv)

    if args.command is None:
        # Default to serve (development)
        args = parser.parse_args(["serve"])

    _configure_logging()
    args.func(args)


if __name__ == "__main__":
    main()
