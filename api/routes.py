"""
LABBUDDY API ROUTES - The HTTP Interface

Starlette app over one MindMapSession.

Endpoints:
- GET    /health                               - Health check
- GET    /api/graph                            - Full graph + UI state
- GET    /api/nodes?q=                         - Nodes matching a search query
- POST   /api/nodes                            - Add node
- GET    /api/nodes/{node_id}                  - Get node
- PATCH  /api/nodes/{node_id}                  - Update title/type/description
- DELETE /api/nodes/{node_id}                  - Delete node (with reconnection)
- POST   /api/nodes/{node_id}/drag             - End of a drag: resolve overlap
- POST   /api/edges                            - Connect two nodes
- DELETE /api/edges/{edge_id}                  - Delete edge
- POST   /api/nodes/{node_id}/recommendations  - Stage AI suggestions
- POST   /api/recommendations/{node_id}/accept - Accept one suggestion
- POST   /api/recommendations/decline          - Decline the open round

LLM proxy:
- POST /api/ai-recommendations, /api/ask-claude, /api/generate-description

Saved maps and attachments:
- /api/maps/..., /api/attachments/..., GET /uploads/{file_name}

WebSocket:
- WS /api/ws - snapshot on connect, then every event-bus event

Status codes: 400 ValidationError or bad JSON, 404 unknown id,
500 collaborator failure. Error bodies are {"error": "..."}.
"""
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
import asyncio
import logging

import msgspec
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from core.assistant import AssistantService, RecommendationService
from core.llm import CollaboratorError
from core.mutations import MutationResult
from core.ontology import AttachmentType, FileType, parse_node_type
from core.schemas import (
    AttachmentInput,
    NodeInput,
    NodeUpdate,
    Position,
    SavedMapInput,
    SavedMapUpdate,
    ValidationError,
    convert,
    to_builtins,
)
from core.session import MindMapSession
from infrastructure.attachments import AttachmentStore, FileUploadService
from infrastructure.config import get_settings
from infrastructure.event_bus import GraphEvent, get_event_bus
from infrastructure.map_store import MapStore, create_map_store


# =============================================================================
# LOGGING
# =============================================================================

logger = logging.getLogger("labbuddy.api")


# =============================================================================
# GLOBAL STATE
# =============================================================================

_session: Optional[MindMapSession] = None
_map_store: Optional[MapStore] = None
_attachments: Optional[AttachmentStore] = None
_uploads: Optional[FileUploadService] = None

# WebSocket connections for real-time updates
_ws_connections: Set[WebSocket] = set()


def get_session() -> MindMapSession:
    """Get the global session, wired to the configured persistence backend."""
    global _session
    if _session is None:
        from infrastructure.persistence import SyncQueue, create_backend

        settings = get_settings()
        sync = SyncQueue(
            create_backend(settings),
            user_id=settings.user_id,
            attempts=settings.sync_attempts,
        )
        _session = MindMapSession(sync=sync, user_id=settings.user_id)
    return _session


def set_session(session: Optional[MindMapSession]) -> None:
    global _session
    _session = session


def get_map_store() -> MapStore:
    global _map_store
    if _map_store is None:
        _map_store = create_map_store(get_settings())
    return _map_store


def set_map_store(store: Optional[MapStore]) -> None:
    global _map_store
    _map_store = store


def get_attachment_store() -> AttachmentStore:
    global _attachments
    if _attachments is None:
        _attachments = AttachmentStore()
    return _attachments


def get_upload_service() -> FileUploadService:
    global _uploads
    if _uploads is None:
        _uploads = FileUploadService(get_settings().upload_dir)
    return _uploads


def set_attachment_services(
    store: Optional[AttachmentStore] = None,
    uploads: Optional[FileUploadService] = None,
) -> None:
    global _attachments, _uploads
    _attachments = store
    _uploads = uploads


def reset_state() -> None:
    """Drop every global (for testing)."""
    set_session(None)
    set_map_store(None)
    set_attachment_services(None, None)
    _ws_connections.clear()


# =============================================================================
# RESPONSE HELPERS
# =============================================================================

_json_encoder = msgspec.json.Encoder()


def json_response(data: Any, status_code: int = 200) -> Response:
    """Create JSON response using msgspec (Structs keep their camelCase names)."""
    return Response(
        content=_json_encoder.encode(data),
        status_code=status_code,
        media_type="application/json"
    )


def error_response(message: str, status_code: int = 400) -> JSONResponse:
    """Create error response."""
    return JSONResponse(
        {"error": message},
        status_code=status_code
    )


def api_errors(handler: Callable[[Request], Awaitable[Response]]):
    """Map ValidationError to 400 and CollaboratorError to 500."""
    @wraps(handler)
    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except ValidationError as e:
            return error_response(str(e), status_code=400)
        except CollaboratorError as e:
            logger.error(f"{request.method} {request.url.path} failed: {e}")
            return error_response(str(e), status_code=500)
    return wrapper


async def read_json(request: Request) -> Any:
    """
    Raises:
        ValidationError: Body is not valid JSON
    """
    body = await request.body()
    if not body:
        return {}
    try:
        return msgspec.json.decode(body)
    except msgspec.DecodeError as e:
        raise ValidationError(f"Invalid JSON: {e}") from e


def _normalize_type(body: Any) -> Any:
    """Accept node types case-insensitively ("paper" -> "Paper")."""
    if isinstance(body, dict) and isinstance(body.get("type"), str):
        node_type = parse_node_type(body["type"])
        if node_type is None:
            raise ValidationError(f"Invalid node type: {body['type']!r}", field="type")
        body = {**body, "type": node_type.value}
    return body


def result_payload(result: MutationResult) -> Dict[str, Any]:
    return {
        "nodesAdded": to_builtins(result.nodes_added),
        "nodesUpdated": to_builtins(result.nodes_updated),
        "nodesRemoved": [n.id for n in result.nodes_removed],
        "edgesAdded": to_builtins(result.edges_added),
        "edgesRemoved": [e.id for e in result.edges_removed],
        "placement": to_builtins(result.placement) if result.placement else None,
    }


def not_found(result: MutationResult) -> Optional[JSONResponse]:
    if result.missing_ids:
        return error_response(f"Not found: {', '.join(result.missing_ids)}", status_code=404)
    return None


def graph_payload(session: MindMapSession) -> Dict[str, Any]:
    state = session.state
    return {
        "nodes": to_builtins(session.store.get_all_nodes()),
        "edges": to_builtins(session.store.get_all_edges()),
        "state": {
            "selectedNodeId": state.selected_node_id,
            "editingNodeId": state.editing_node_id,
            "searchQuery": state.search_query,
            "staging": to_builtins(state.staging) if state.staging else None,
            "recommendationsPending": state.recommendations_pending,
        },
    }


# =============================================================================
# HEALTH & GRAPH
# =============================================================================

async def health(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "service": "labbuddy",
        "version": "0.1.0"
    })


async def get_graph(request: Request) -> Response:
    return json_response(graph_payload(get_session()))


# =============================================================================
# NODE OPERATIONS
# =============================================================================

async def list_nodes(request: Request) -> Response:
    """Nodes whose title, type or description contain ?q= (all if blank)."""
    session = get_session()
    return json_response(session.set_search_query(request.query_params.get("q", "")))


@api_errors
async def create_node(request: Request) -> Response:
    """
    Body:
        {"title": "...", "type": "Concept", "description": "...",
         "position": {"x": 0, "y": 0}}
    """
    data = convert(_normalize_type(await read_json(request)), NodeInput)
    result = get_session().add_node(data)
    return json_response(result.nodes_added[0], status_code=201)


async def get_node(request: Request) -> Response:
    node_id = request.path_params["node_id"]
    node = get_session().store.find_node(node_id)
    if node is None:
        return error_response(f"Node not found: {node_id}", status_code=404)
    return json_response(node)


@api_errors
async def update_node(request: Request) -> Response:
    node_id = request.path_params["node_id"]
    fields = convert(_normalize_type(await read_json(request)), NodeUpdate)
    session = get_session()
    result = session.update_node(node_id, fields)
    missing = not_found(result)
    if missing:
        return missing
    return json_response(session.store.get_node(node_id))


@api_errors
async def delete_node(request: Request) -> Response:
    result = get_session().delete_node(request.path_params["node_id"])
    return not_found(result) or json_response(result_payload(result))


@api_errors
async def drag_node(request: Request) -> Response:
    """Body: {"x": 120, "y": 80}. Returns the node at its resolved position."""
    node_id = request.path_params["node_id"]
    position = convert(await read_json(request), Position)
    session = get_session()
    result = session.end_drag(node_id, position)
    missing = not_found(result)
    if missing:
        return missing
    return json_response({
        "node": to_builtins(session.store.get_node(node_id)),
        "placement": to_builtins(result.placement) if result.placement else None,
    })


# =============================================================================
# EDGE OPERATIONS
# =============================================================================

class ConnectRequest(msgspec.Struct, kw_only=True):
    source: str
    target: str


@api_errors
async def create_edge(request: Request) -> Response:
    """Body: {"source": "<node id>", "target": "<node id>"}"""
    body = convert(await read_json(request), ConnectRequest)
    result = get_session().connect(body.source, body.target)
    return not_found(result) or json_response(result.edges_added[0], status_code=201)


@api_errors
async def delete_edge(request: Request) -> Response:
    result = get_session().delete_edge(request.path_params["edge_id"])
    return not_found(result) or json_response(result_payload(result))


# =============================================================================
# RECOMMENDATION STAGING
# =============================================================================

@api_errors
async def request_recommendations(request: Request) -> Response:
    result = await get_session().request_recommendations(request.path_params["node_id"])
    return not_found(result) or json_response(result_payload(result))


@api_errors
async def accept_recommendation(request: Request) -> Response:
    result = get_session().accept_recommendation(request.path_params["node_id"])
    return not_found(result) or json_response(result_payload(result))


@api_errors
async def decline_recommendations(request: Request) -> Response:
    result = get_session().decline_recommendations()
    return json_response(result_payload(result))


# =============================================================================
# LLM PROXY
# =============================================================================

async def ai_recommendations(request: Request) -> Response:
    """Body: {"selectedNode": {...}, "allNodes": [...]} -> {"recommendations": [...]}"""
    try:
        body = await read_json(request)
    except ValidationError as e:
        return error_response(str(e))
    selected = body.get("selectedNode") if isinstance(body, dict) else None
    if not selected:
        return error_response("Selected node is required")

    try:
        recommendations = await RecommendationService().arecommend(
            selected, body.get("allNodes") or []
        )
    except CollaboratorError as e:
        logger.error(f"AI recommendation error: {e}")
        return error_response("Failed to generate recommendations", status_code=500)
    return json_response({"recommendations": recommendations})


async def ask_claude(request: Request) -> Response:
    """Body: {"question": "...", "nodes": [...]} -> {"reply": "..."}"""
    try:
        body = await read_json(request)
    except ValidationError as e:
        return error_response(str(e))
    question = body.get("question") if isinstance(body, dict) else None
    if not isinstance(question, str) or not question.strip():
        return error_response("Question is required")

    try:
        reply = await asyncio.to_thread(AssistantService().ask, question, body.get("nodes"))
    except CollaboratorError as e:
        logger.error(f"Assistant error: {e}")
        return error_response("Failed to get a reply from the assistant", status_code=500)
    return json_response({"reply": reply})


async def generate_description(request: Request) -> Response:
    """Body: {"title": "...", "type": "Paper"} -> {"description": "..."}"""
    try:
        body = await read_json(request)
    except ValidationError as e:
        return error_response(str(e))
    if not isinstance(body, dict) or not body.get("title") or not body.get("type"):
        return error_response("Title and type are required")

    try:
        description = await asyncio.to_thread(
            AssistantService().describe, body["title"], body["type"]
        )
    except CollaboratorError as e:
        logger.error(f"Description generation error: {e}")
        return error_response("Failed to generate description", status_code=500)
    return json_response({"description": description})


# =============================================================================
# SAVED MAPS
# =============================================================================

@api_errors
async def list_maps(request: Request) -> Response:
    return json_response(get_map_store().list_for_user(request.path_params["user_id"]))


@api_errors
async def get_map(request: Request) -> Response:
    saved = get_map_store().get(request.path_params["user_id"], request.path_params["map_id"])
    if saved is None:
        return error_response("Map not found", status_code=404)
    return json_response(saved)


@api_errors
async def create_map(request: Request) -> Response:
    """Body: {"userId": "...", "title": "...", "data": {"nodes": [...], "edges": [...]}}"""
    body = await read_json(request)
    if isinstance(body, dict) and "data" not in body:
        # No data means "save what is on the canvas"
        body = {**body, "data": to_builtins(get_session().permanent_snapshot())}
    saved = get_map_store().create(convert(body, SavedMapInput))
    return json_response(saved, status_code=201)


@api_errors
async def update_map(request: Request) -> Response:
    changes = convert(await read_json(request), SavedMapUpdate)
    saved = get_map_store().update(request.path_params["map_id"], changes)
    if saved is None:
        return error_response("Map not found", status_code=404)
    return json_response(saved)


@api_errors
async def delete_map(request: Request) -> Response:
    deleted = get_map_store().delete(request.path_params["user_id"], request.path_params["map_id"])
    if not deleted:
        return error_response("Map not found", status_code=404)
    return json_response({"success": True})


@api_errors
async def load_map(request: Request) -> Response:
    """Replace the canvas with a saved map."""
    saved = get_map_store().get(request.path_params["user_id"], request.path_params["map_id"])
    if saved is None:
        return error_response("Map not found", status_code=404)
    session = get_session()
    session.load_map(saved.data)
    return json_response(graph_payload(session))


# =============================================================================
# ATTACHMENTS
# =============================================================================

class LinkRequest(msgspec.Struct, kw_only=True, rename="camel"):
    node_id: str
    name: str
    url: str


def _check_node(node_id: str) -> Optional[JSONResponse]:
    if not get_session().store.has_node(node_id):
        return error_response(f"Node not found: {node_id}", status_code=404)
    return None


@api_errors
async def create_link_attachment(request: Request) -> Response:
    """Body: {"nodeId": "...", "name": "...", "url": "https://..."}"""
    link = convert(await read_json(request), LinkRequest)
    missing = _check_node(link.node_id)
    if missing:
        return missing
    attachment = get_attachment_store().create(AttachmentInput(
        node_id=link.node_id,
        type=AttachmentType.LINK,
        name=link.name,
        url=link.url,
    ))
    return json_response(attachment, status_code=201)


async def _upload_attachment(request: Request, kind: AttachmentType) -> Response:
    async with request.form() as form:
        upload = form.get("file")
        node_id = form.get("nodeId")
        name = form.get("name")
        if upload is None or isinstance(upload, str):
            return error_response("No file uploaded")
        if not node_id:
            return error_response("nodeId is required")
        missing = _check_node(node_id)
        if missing:
            return missing

        mime_type = upload.content_type
        if kind == AttachmentType.IMAGE and not (mime_type or "").startswith("image/"):
            return error_response("Only image files are allowed")

        content = await upload.read()
        stored = await asyncio.to_thread(
            get_upload_service().upload_file, content, upload.filename or "upload", mime_type
        )

    attachment = get_attachment_store().create(AttachmentInput(
        node_id=node_id,
        type=kind,
        name=name or stored.original_name,
        url=stored.url,
        file_type=FileType.IMAGE if kind == AttachmentType.IMAGE else stored.file_type,
        file_size=stored.size,
        mime_type=stored.mime_type,
    ))
    return json_response(attachment, status_code=201)


@api_errors
async def create_image_attachment(request: Request) -> Response:
    """Multipart: file (image/*), nodeId, optional name."""
    return await _upload_attachment(request, AttachmentType.IMAGE)


@api_errors
async def create_file_attachment(request: Request) -> Response:
    """Multipart: file, nodeId, optional name."""
    return await _upload_attachment(request, AttachmentType.FILE)


async def delete_attachment(request: Request) -> Response:
    if not get_attachment_store().delete(request.path_params["attachment_id"]):
        return error_response("Attachment not found", status_code=404)
    return json_response({"success": True})


async def list_node_attachments(request: Request) -> Response:
    return json_response(get_attachment_store().list_for_node(request.path_params["node_id"]))


async def serve_upload(request: Request) -> Response:
    path = get_upload_service().resolve(request.path_params["file_name"])
    if path is None:
        return error_response("File not found", status_code=404)
    return FileResponse(path)


# =============================================================================
# WEBSOCKET
# =============================================================================

async def graph_websocket(websocket: WebSocket) -> None:
    """
    WebSocket endpoint for real-time graph updates.

    Protocol:
    1. Client connects, server sends {"type": "snapshot", "data": graph}
    2. Server forwards every event-bus event as {"type": <event>, ...}
    3. Client may send {"type": "ping"}; idle connections get heartbeats
    """
    await websocket.accept()
    _ensure_broadcast_subscription()
    _ws_connections.add(websocket)

    try:
        await websocket.send_json({
            "type": "snapshot",
            "data": graph_payload(get_session()),
        })

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_json(), timeout=30.0)
                if isinstance(data, dict) and data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat"})

    except WebSocketDisconnect:
        pass
    finally:
        _ws_connections.discard(websocket)


async def broadcast_json(message: Dict[str, Any]) -> None:
    """Send a JSON message to every connected client, dropping dead ones."""
    if not _ws_connections:
        return

    dead = set()
    for ws in list(_ws_connections):
        try:
            await ws.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Dropping WebSocket client: {e}")
            dead.add(ws)

    _ws_connections.difference_update(dead)


async def broadcast_graph_event(event: GraphEvent) -> None:
    """Event bus -> WebSocket bridge."""
    await broadcast_json({
        "type": event.type.value,
        "payload": event.payload,
        "timestamp": event.timestamp,
        "source": event.source,
    })


def _ensure_broadcast_subscription() -> None:
    # subscribe_async ignores a handler it already has
    get_event_bus().subscribe_all(broadcast_graph_event, is_async=True)


# =============================================================================
# APP FACTORY
# =============================================================================

def create_routes() -> List[Route]:
    """Create all API routes."""
    return [
        # Health & graph
        Route("/health", health, methods=["GET"]),
        Route("/api/graph", get_graph, methods=["GET"]),

        # Node operations
        Route("/api/nodes", list_nodes, methods=["GET"]),
        Route("/api/nodes", create_node, methods=["POST"]),
        Route("/api/nodes/{node_id}", get_node, methods=["GET"]),
        Route("/api/nodes/{node_id}", update_node, methods=["PATCH"]),
        Route("/api/nodes/{node_id}", delete_node, methods=["DELETE"]),
        Route("/api/nodes/{node_id}/drag", drag_node, methods=["POST"]),

        # Edge operations
        Route("/api/edges", create_edge, methods=["POST"]),
        Route("/api/edges/{edge_id}", delete_edge, methods=["DELETE"]),

        # Recommendation staging
        Route("/api/nodes/{node_id}/recommendations", request_recommendations, methods=["POST"]),
        Route("/api/recommendations/decline", decline_recommendations, methods=["POST"]),
        Route("/api/recommendations/{node_id}/accept", accept_recommendation, methods=["POST"]),

        # LLM proxy
        Route("/api/ai-recommendations", ai_recommendations, methods=["POST"]),
        Route("/api/ask-claude", ask_claude, methods=["POST"]),
        Route("/api/generate-description", generate_description, methods=["POST"]),

        # Saved maps
        Route("/api/maps", create_map, methods=["POST"]),
        Route("/api/maps/{map_id}", update_map, methods=["PUT"]),
        Route("/api/maps/{user_id}", list_maps, methods=["GET"]),
        Route("/api/maps/{user_id}/{map_id}", get_map, methods=["GET"]),
        Route("/api/maps/{user_id}/{map_id}", delete_map, methods=["DELETE"]),
        Route("/api/maps/{user_id}/{map_id}/load", load_map, methods=["POST"]),

        # Attachments
        Route("/api/attachments/link", create_link_attachment, methods=["POST"]),
        Route("/api/attachments/image", create_image_attachment, methods=["POST"]),
        Route("/api/attachments/file", create_file_attachment, methods=["POST"]),
        Route("/api/attachments/node/{node_id}", list_node_attachments, methods=["GET"]),
        Route("/api/attachments/{attachment_id}", delete_attachment, methods=["DELETE"]),
        Route("/uploads/{file_name}", serve_upload, methods=["GET"]),
    ]


def create_websocket_routes() -> List[WebSocketRoute]:
    """Create WebSocket routes."""
    return [
        WebSocketRoute("/api/ws", graph_websocket),
    ]


@asynccontextmanager
async def lifespan(app: Starlette):
    """Load the persisted graph on startup; flush pending sync on shutdown."""
    session = get_session()
    _ensure_broadcast_subscription()
    if await session.load_from_backend():
        logger.info(f"Loaded {session.store.node_count} nodes from persistence")
    yield
    if session.sync is not None:
        await session.sync.drain()


def create_app() -> Starlette:
    """Create the Starlette application."""
    from starlette.middleware import Middleware
    from starlette.middleware.cors import CORSMiddleware

    # CORS middleware for frontend access
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=list(get_settings().cors_origins),
            allow_methods=["*"],
            allow_headers=["*"],
        )
    ]

    return Starlette(
        routes=create_routes() + create_websocket_routes(),
        middleware=middleware,
        lifespan=lifespan,
        debug=False,
    )


# Application instance for ASGI servers
app = create_app()
