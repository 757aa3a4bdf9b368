"""FastAPI application entry point."""

import asyncio
import json
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import Body, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import settings
from .exceptions import AuthFailure, MalformedEvent, SyncError
from .schemas.events import parse_board_event
from .schemas.presence import (
    PresenceSnapshot,
    PublishResult,
    UnicastRequest,
    UnicastResult,
    UserIdentity,
)
from .services.auth_service import get_current_identity, oauth2_scheme, resolve_identity
from .websocket import (
    ConnectionManager,
    HttpMembershipLookup,
    PresenceRegistry,
    WorkspaceAccessChecker,
    handle_connect,
    handle_disconnect,
    notify_user,
    publish_board_event,
    route_incoming_message,
    send_error,
)

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Construct the per-process real-time services."""
    app.state.connection_manager = ConnectionManager()
    app.state.presence_registry = PresenceRegistry()

    lookup = None
    if settings.persistence_api_url:
        lookup = HttpMembershipLookup(
            settings.persistence_api_url,
            timeout=settings.persistence_timeout,
        )
        logger.info(f"Workspace membership checked against {settings.persistence_api_url}")
    else:
        logger.warning("PERSISTENCE_API_URL not set, workspace membership checks disabled")

    app.state.access_checker = WorkspaceAccessChecker(
        lookup,
        ttl=settings.room_auth_cache_ttl,
        max_size=settings.room_auth_cache_max_size,
    )
    logger.info("Real-time services started")

    yield

    stats = app.state.presence_registry.get_stats()
    logger.info(
        f"Shutting down with {app.state.connection_manager.total_connections} "
        f"connection(s), {stats['total_users']} user(s) present"
    )


app = FastAPI(
    title="Board Sync API",
    description="Real-time presence and board synchronization for collaborative task boards",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connection_manager


def get_presence_registry(request: Request) -> PresenceRegistry:
    return request.app.state.presence_registry


def get_access_checker(request: Request) -> WorkspaceAccessChecker:
    return request.app.state.access_checker


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    """Render taxonomy errors with their HTTP status."""
    status_code = exc.status_code or (422 if isinstance(exc, MalformedEvent) else 400)
    logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, **exc.to_payload()},
    )


# Global exception handler to log errors
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log all unhandled exceptions with full traceback."""
    logger.error(f"Unhandled exception on {request.method} {request.url}:")
    logger.error(f"Exception type: {type(exc).__name__}")
    logger.error(f"Exception message: {str(exc)}")
    logger.error(f"Traceback:\n{traceback.format_exc()}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@app.get("/")
async def root():
    """Root endpoint - health check."""
    return {
        "status": "healthy",
        "service": "Board Sync API",
        "version": __version__,
    }


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint for monitoring."""
    connection_manager = get_connection_manager(request)
    return {
        "status": "healthy",
        "websocket": {
            "connections": connection_manager.total_connections,
            "rooms": connection_manager.total_rooms,
        },
        "presence": get_presence_registry(request).get_stats(),
        "membership_checks": get_access_checker(request).enabled,
    }


@app.post("/api/workspaces/{workspace_id}/events", response_model=PublishResult)
async def publish_workspace_event(
    workspace_id: int,
    frame: dict = Body(...),
    identity: UserIdentity = Depends(get_current_identity),
    token: str = Depends(oauth2_scheme),
    connection_manager: ConnectionManager = Depends(get_connection_manager),
    access_checker: WorkspaceAccessChecker = Depends(get_access_checker),
) -> PublishResult:
    """
    Publish a confirmed board mutation to everyone viewing the workspace.

    Called by the REST layer after a mutation commits. The body is a
    ``{"type", "data"}`` frame holding one of the board events.

    Args:
        workspace_id: The workspace room
        frame: The board event frame

    Returns:
        PublishResult: Recipient count and the stamped revision
    """
    await access_checker.require_access(identity.user_id, workspace_id, token)
    event = parse_board_event(frame)
    result = await publish_board_event(workspace_id, event, connection_manager)
    return PublishResult(recipients=result.recipients, revision=result.revision)


@app.get("/api/workspaces/{workspace_id}/presence", response_model=list[PresenceSnapshot])
async def get_workspace_presence(
    workspace_id: int,
    identity: UserIdentity = Depends(get_current_identity),
    token: str = Depends(oauth2_scheme),
    registry: PresenceRegistry = Depends(get_presence_registry),
    access_checker: WorkspaceAccessChecker = Depends(get_access_checker),
) -> list[PresenceSnapshot]:
    """Get the users currently viewing a workspace."""
    await access_checker.require_access(identity.user_id, workspace_id, token)
    return await registry.snapshot(workspace_id)


@app.post("/api/users/{user_id}/events", response_model=UnicastResult)
async def send_user_event(
    user_id: int,
    request_body: UnicastRequest,
    identity: UserIdentity = Depends(get_current_identity),
    connection_manager: ConnectionManager = Depends(get_connection_manager),
) -> UnicastResult:
    """
    Deliver an event to one connected user (e.g. a new invitation).

    Offline users are skipped; nothing is queued.
    """
    logger.debug(f"User {identity.user_id} sending {request_body.type} to user {user_id}")
    delivered = await notify_user(
        user_id, request_body.type, request_body.data, connection_manager
    )
    return UnicastResult(delivered=delivered)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str | None = None):
    """
    WebSocket endpoint for real-time collaboration.

    Args:
        websocket: The WebSocket connection
        token: JWT token for authentication (query parameter)

    Authentication is done via query parameter since WebSocket
    doesn't support custom headers in the initial handshake
    from browser clients.

    Usage:
        ws://localhost:8000/ws?token=<jwt_token>
    """
    try:
        identity = resolve_identity(token)
    except AuthFailure as e:
        logger.debug(f"WebSocket handshake rejected: {e.message}")
        await websocket.close(code=4001, reason=e.message)
        return

    connection_manager: ConnectionManager = websocket.app.state.connection_manager
    registry: PresenceRegistry = websocket.app.state.presence_registry
    access_checker: WorkspaceAccessChecker = websocket.app.state.access_checker

    connection = await handle_connect(
        websocket, identity, connection_manager, registry, token=token
    )
    user_id = identity.user_id

    # Rate limiting state
    message_timestamps: list[float] = []

    # Token validity tracking
    token_valid = True
    loop = asyncio.get_running_loop()
    last_token_check = loop.time()

    async def server_ping_task():
        """Background task to send periodic pings and validate token."""
        nonlocal token_valid, last_token_check
        try:
            while True:
                await asyncio.sleep(settings.ws_ping_interval)
                try:
                    await websocket.send_json({"type": "ping", "data": {}})

                    current_time = loop.time()
                    if current_time - last_token_check > settings.ws_token_revalidation_interval:
                        try:
                            resolve_identity(token)
                        except AuthFailure:
                            logger.warning(f"Token expired for user {user_id}, closing connection")
                            token_valid = False
                            await send_error(
                                connection_manager,
                                connection,
                                "TOKEN_EXPIRED",
                                "Session expired, please re-authenticate",
                            )
                            await websocket.close(code=4001, reason="Token expired")
                            break
                        last_token_check = current_time

                except Exception:
                    break  # Connection is dead, exit task
        except asyncio.CancelledError:
            pass

    ping_task = asyncio.create_task(server_ping_task())

    try:
        while token_valid:
            # Receive with timeout to detect stale connections
            try:
                raw_message = await asyncio.wait_for(
                    websocket.receive_text(),
                    timeout=settings.ws_receive_timeout,
                )
            except asyncio.TimeoutError:
                # No message received within timeout - send ping to verify
                try:
                    await websocket.send_json({"type": "ping", "data": {}})
                    raw_message = await asyncio.wait_for(
                        websocket.receive_text(),
                        timeout=10,
                    )
                except (asyncio.TimeoutError, Exception):
                    logger.info(f"Connection timeout for user: {user_id}")
                    break

            # Rate limiting check
            current_time = loop.time()
            message_timestamps[:] = [
                t for t in message_timestamps
                if current_time - t < settings.ws_rate_limit_window
            ]

            if len(message_timestamps) >= settings.ws_rate_limit_messages:
                logger.warning(f"Rate limit exceeded for user {user_id}")
                await send_error(
                    connection_manager, connection, "RATE_LIMIT", "Too many messages, slow down"
                )
                continue

            message_timestamps.append(current_time)

            # Validate message size
            if len(raw_message) > settings.ws_max_message_size:
                logger.warning(
                    f"Message too large from user {user_id}: "
                    f"{len(raw_message)} bytes (max: {settings.ws_max_message_size})"
                )
                await send_error(
                    connection_manager,
                    connection,
                    "MESSAGE_TOO_LARGE",
                    f"Message exceeds maximum size of {settings.ws_max_message_size} bytes",
                )
                continue

            try:
                data = json.loads(raw_message)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON from user {user_id}")
                await send_error(connection_manager, connection, "INVALID_JSON", "Invalid JSON format")
                continue

            if not isinstance(data, dict):
                await send_error(
                    connection_manager, connection, "INVALID_FRAME", "Frame must be a JSON object"
                )
                continue

            await route_incoming_message(
                connection, data, connection_manager, registry, access_checker
            )

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnect for user: {user_id}")
    except Exception as e:
        logger.error(f"WebSocket exception for user {user_id}: {e}")
    finally:
        ping_task.cancel()
        # Runs to completion even when this handler task is being cancelled,
        # so the room always hears user-left.
        await asyncio.shield(handle_disconnect(websocket, connection_manager, registry))
        try:
            await ping_task
        except asyncio.CancelledError:
            pass


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("boardsync.main:app", host=settings.host, port=settings.port)
