from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
from routers.history import history_router
from backend import StorageBackend, create_backend
from services.chat_service import ChatService
from services.transport import Transport
from constants import UPLOAD_DIR
import uuid
import json
from typing import Any, Dict, Optional
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


class ConnectionManager(Transport):
    """Live WebSocket connections of this process, keyed by connection id."""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.active_connections[connection_id] = websocket
        logger.debug(f"Accepted connection {connection_id} (active: {len(self.active_connections)})")
        return connection_id

    def disconnect(self, connection_id: str):
        self.active_connections.pop(connection_id, None)
        logger.debug(f"Removed connection {connection_id} (active: {len(self.active_connections)})")

    def connection_ids(self) -> list[str]:
        return list(self.active_connections)

    async def send_frame(self, connection_id: str, frame: dict):
        ws = self.active_connections.get(connection_id)
        if ws is None:
            logger.debug(f"Connection {connection_id} is gone, dropping {frame.get('type')}")
            return
        try:
            await ws.send_text(json.dumps(frame))
        except Exception as e:
            # Connection might be closed, the receive loop will clean it up
            logger.warning(f"Error sending to connection {connection_id}: {e}")

    async def send(self, connection_id: str, event: str, data: Any) -> None:
        await self.send_frame(connection_id, {"type": event, "data": data})

    async def send_ack(self, connection_id: str, ack_id: Any, data: Any):
        await self.send_frame(connection_id, {"type": "ack", "ack": ack_id, "data": data})


def create_app(store: Optional[StorageBackend] = None, upload_dir: str = UPLOAD_DIR, **service_options) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        backend = store or create_backend()
        await backend.ping()
        manager = ConnectionManager()
        chat_service = ChatService(backend, manager, **service_options)
        await chat_service.start()
        app.state.connection_manager = manager
        app.state.chat_service = chat_service
        logger.info("Chat service ready")
        try:
            yield
        finally:
            await chat_service.shutdown()
            logger.info("Chat service stopped")

    app = FastAPI(lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins
        allow_credentials=True,
        allow_methods=["*"],  # Allow all HTTP methods
        allow_headers=["*"],  # Allow all headers
    )

    os.makedirs(upload_dir, exist_ok=True)
    app.state.upload_dir = upload_dir
    app.mount("/uploads", StaticFiles(directory=upload_dir), name="uploads")
    app.include_router(history_router)

    @app.get("/")
    async def read_root():
        return {"message": "Chat backend is running"}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """One chat connection.

        Frames in:  {"type": event, "data": payload, "ack": optional id}
        Frames out: {"type": event, "data": payload} and {"type": "ack", "ack": id, "data": reply}
        """
        manager: ConnectionManager = websocket.app.state.connection_manager
        chat_service: ChatService = websocket.app.state.chat_service
        connection_id = await manager.connect(websocket)
        await chat_service.connect(connection_id)

        try:
            while True:
                try:
                    raw = await websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                    break

                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    await manager.send(connection_id, "error", {"error": "Frames must be JSON"})
                    continue
                if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
                    await manager.send(connection_id, "error", {"error": "Frames need a string 'type'"})
                    continue

                event = frame["type"]
                if not chat_service.knows(event):
                    await manager.send(connection_id, "error", {"error": f"Unknown event {event}"})
                    continue

                logger.debug(f"Received {event} from connection {connection_id}")
                reply = await chat_service.handle(connection_id, event, frame.get("data"))
                ack_id = frame.get("ack")
                if ack_id is not None and reply is not None:
                    await manager.send_ack(connection_id, ack_id, reply)
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        finally:
            manager.disconnect(connection_id)
            await chat_service.disconnect(connection_id)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
