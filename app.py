from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from routers.rooms import health_router, rooms_router
from backend import create_backend
from constants import CORS_ORIGIN, WEBSOCKET_TIMEOUT
from engine.core import RoomEngine
from engine.registry import Connection
import asyncio
from typing import Callable, Optional
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(engine_factory: Optional[Callable[[], RoomEngine]] = None,
               websocket_timeout: float = WEBSOCKET_TIMEOUT / 1000) -> FastAPI:
    """Build the application. ``engine_factory`` is called once per lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = engine_factory() if engine_factory else RoomEngine(backend=create_backend())
        app.state.engine = engine
        await engine.start()
        try:
            yield
        finally:
            await engine.stop()

    app = FastAPI(title="Collaborative Python Classroom", lifespan=lifespan)
    app.state.websocket_timeout = websocket_timeout

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[CORS_ORIGIN],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.include_router(health_router)
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info("FastAPI application initialized")
    return app


async def receive_frame(websocket: WebSocket, timeout: float) -> Optional[str]:
    """Next text frame, or None when the client went away."""
    if timeout:
        message = await asyncio.wait_for(websocket.receive(), timeout=timeout)
    else:
        message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        return None
    if message.get("text") is not None:
        return message["text"]
    return (message.get("bytes") or b"").decode("utf-8", errors="replace")


async def websocket_endpoint(websocket: WebSocket):
    """One transport session. Frames are handed to the engine's dispatcher in arrival order."""
    engine: RoomEngine = websocket.app.state.engine
    timeout = websocket.app.state.websocket_timeout
    client_ip = websocket.client.host if websocket.client else "unknown"

    if engine.at_capacity():
        logger.warning(f"WebSocket connection from {client_ip} rejected: server is full")
        await websocket.close(code=1013, reason="Server is full")
        return

    await websocket.accept()
    connection = Connection(websocket, client_ip=client_ip)
    engine.dispatcher.submit(engine.connect, connection)
    writer = asyncio.create_task(connection.pump())
    logger.info(f"WebSocket connection accepted from {client_ip} as {connection.id}")

    message_count = 0
    try:
        while True:
            try:
                data = await receive_frame(websocket, timeout)
            except asyncio.TimeoutError:
                logger.info(f"Connection {connection.id} idle for {timeout}s, closing")
                break
            if data is None:
                logger.info(f"WebSocket disconnected normally for connection {connection.id}")
                break
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {connection.id}")
            engine.dispatcher.submit(engine.receive, connection, data, connection=connection)
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection.id}: {e}", exc_info=True)
    finally:
        connection.mark_closed()
        engine.dispatcher.submit(engine.disconnect, connection)
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")


app = create_app()
