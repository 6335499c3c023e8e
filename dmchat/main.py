import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response, Request, Depends, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dmchat.chat_handler import ChatHandler, result_label
from dmchat.config import settings
from dmchat.errors import Err, Result
from dmchat.storage import init_db, check_db_health, get_db
from dmchat.logging_utils import setup_logging, RequestLoggingMiddleware, log_chat_data
from dmchat.metrics import get_metrics, get_metrics_content_type
from dmchat.realtime import ConnectionManager
from dmchat.schemas import ChatResponse, ErrorResponse, HealthResponse


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Direct Messaging API",
    description="Chats between users with realtime fan-out of chat updates",
    version="1.0.0",
    lifespan=lifespan,
)

# Realtime connections are owned by the app and injected into each handler
app.state.connections = ConnectionManager()

app.add_middleware(RequestLoggingMiddleware)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Validation error"},
    404: {"model": ErrorResponse, "description": "Chat or user not found"},
    500: {"model": ErrorResponse, "description": "Persistence error"},
}


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connections


def get_chat_handler(
    db: Session = Depends(get_db),
    connections: ConnectionManager = Depends(get_connection_manager),
) -> ChatHandler:
    return ChatHandler(db, connections)


async def read_json_body(request: Request):
    """Parse the raw body; invalid JSON is passed on as None and rejected by validation."""
    raw_body = await request.body()
    try:
        return json.loads(raw_body) if raw_body else None
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.debug(f"Invalid JSON body: {e}")
        return None


def to_response(
    request: Request,
    operation: str,
    result: Result,
    success_status: int = status.HTTP_200_OK,
    chat_id: str = None,
) -> JSONResponse:
    """Map an operation result to a JSON response: the hydrated chat(s) or {"error": ...}."""
    if isinstance(result, Err):
        log_chat_data(request, operation, chat_id, result_label(result.error))
        return JSONResponse(status_code=result.status_code, content={"error": result.error.message})

    log_chat_data(request, operation, chat_id, "ok")
    value = result.value
    if isinstance(value, list):
        content = [chat.to_json() for chat in value]
    else:
        content = value.to_json()
    return JSONResponse(status_code=success_status, content=content)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the chat
    schema is applied. Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Chat Routes
# =============================================================================

@app.post("/chats", status_code=201, response_model=ChatResponse, responses=ERROR_RESPONSES)
@app.post("/createChat", status_code=201, response_model=ChatResponse, responses=ERROR_RESPONSES,
          include_in_schema=False)
async def create_chat(request: Request, handler: ChatHandler = Depends(get_chat_handler)):
    """
    Create a chat between two or more users, optionally with seed messages.

    Body:
        - participants: usernames (at least two, distinct)
        - messages: optional list of {msg, msgFrom, msgDateTime?}

    The hydrated chat is broadcast to every realtime connection as a
    "created" chatUpdate.
    """
    body = await read_json_body(request)
    result = await handler.create_chat(body)
    return to_response(request, "create_chat", result, status.HTTP_201_CREATED)


@app.get("/chats/user/{username}", response_model=list[ChatResponse], responses=ERROR_RESPONSES)
async def get_chats_by_user(username: str, request: Request, handler: ChatHandler = Depends(get_chat_handler)):
    """
    List every chat the user participates in (possibly empty).
    """
    result = await handler.get_chats_by_user(username)
    return to_response(request, "get_chats_by_user", result)


@app.get("/chats/{chat_id}", response_model=ChatResponse, responses=ERROR_RESPONSES)
async def get_chat(chat_id: str, request: Request, handler: ChatHandler = Depends(get_chat_handler)):
    """Retrieve one hydrated chat."""
    result = await handler.get_chat(chat_id)
    return to_response(request, "get_chat", result, chat_id=chat_id)


@app.post("/chats/{chat_id}/messages", response_model=ChatResponse, responses=ERROR_RESPONSES)
async def add_message_to_chat(chat_id: str, request: Request, handler: ChatHandler = Depends(get_chat_handler)):
    """
    Append a direct message to a chat.

    Body:
        - msg: non-empty text
        - msgFrom: sender username
        - msgDateTime: optional ISO-8601 timestamp, defaults to server time

    The hydrated chat is broadcast to the chat's room as a "newMessage"
    chatUpdate.
    """
    body = await read_json_body(request)
    result = await handler.add_message(chat_id, body)
    return to_response(request, "add_message", result, chat_id=chat_id)


@app.post("/chats/{chat_id}/participants", response_model=ChatResponse, responses=ERROR_RESPONSES)
async def add_participant_to_chat(chat_id: str, request: Request, handler: ChatHandler = Depends(get_chat_handler)):
    """
    Add a participant (by username) to a chat. Adding an existing participant
    is a no-op.
    """
    body = await read_json_body(request)
    result = await handler.add_participant(chat_id, body)
    return to_response(request, "add_participant", result, chat_id=chat_id)


# =============================================================================
# Realtime Route
# =============================================================================

@app.websocket("/ws")
async def chat_updates(websocket: WebSocket):
    """
    Realtime channel. Clients send joinChat / leaveChat frames and receive
    chatUpdate events for the chats they joined, plus every "created" event.
    """
    connections: ConnectionManager = websocket.app.state.connections
    await connections.connect(websocket)
    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except (json.JSONDecodeError, UnicodeDecodeError, KeyError):
                logger.debug("Ignoring malformed realtime frame")
                continue
            await connections.handle_frame(websocket, frame)
    except WebSocketDisconnect:
        pass
    finally:
        connections.disconnect(websocket)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
